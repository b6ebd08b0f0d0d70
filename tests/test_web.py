import sys
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dashboard.application import build_services
from dashboard.config import Settings
from dashboard.web import create_app


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        hostname="localhost",
        database_path=str(tmp_path / "directory.sqlite3"),
        session_secret="not-so-secret",
        login_delay=0,
    )
    values.update(overrides)
    return Settings(**values)


def _login(client: TestClient, email: str, password: str):
    return client.post("/auth/login", json={"email": email, "password": password})


def test_app_requires_session_secret(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        create_app(settings=_settings(tmp_path, session_secret=None))


def test_local_login_session_and_logout(tmp_path: Path) -> None:
    app = create_app(settings=_settings(tmp_path))

    with TestClient(app) as client:
        anonymous = client.get("/auth/session").json()
        assert anonymous["is_authenticated"] is False
        assert anonymous["auth_mode"] == "local"

        failed = _login(client, "admin@bvg.com", "wrong")
        assert failed.status_code == 401
        assert failed.json()["success"] is False

        response = _login(client, "admin@bvg.com", "admin123")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["user"]["role"] == "admin"
        assert body["platform_user"]["email"] == "admin@bvg.com"

        restored = client.get("/auth/session").json()
        assert restored["is_authenticated"] is True
        assert restored["user"]["email"] == "admin@bvg.com"

        assert client.get("/auth/has-role", params={"roles": ["admin"]}).json() == {"allowed": True}
        assert client.get("/auth/has-role", params={"roles": ["read"]}).json() == {"allowed": False}
        assert client.get("/auth/has-role", params={"roles": ["root"]}).status_code == 400

        logged_out = client.post("/auth/logout")
        assert logged_out.status_code == 200
        assert logged_out.json()["is_authenticated"] is False
        assert client.get("/auth/session").json()["is_authenticated"] is False


def test_admin_routes_enforce_roles(tmp_path: Path) -> None:
    app = create_app(settings=_settings(tmp_path))

    with TestClient(app) as client:
        assert client.get("/users").status_code == 401

        _login(client, "admin@bvg.com", "admin123")
        created = client.post("/users", json={"email": "carla@example.com", "name": "Carla"})
        assert created.status_code == 201
        user_id = created.json()["id"]

        duplicate = client.post("/users", json={"email": "carla@example.com", "name": "Carla"})
        assert duplicate.status_code == 400

        patched = client.patch(f"/users/{user_id}", json={"role": "ops"})
        assert patched.status_code == 200
        assert patched.json()["role"] == "ops"

        assert client.post(f"/users/{user_id}/deactivate").json()["status"] == "inactive"
        assert client.post(f"/users/{user_id}/reactivate").json()["status"] == "active"
        assert client.patch("/users/9999", json={"name": "Ghost"}).status_code == 404

        emails = [user["email"] for user in client.get("/users").json()["users"]]
        assert emails == ["admin@bvg.com", "carla@example.com"]

        stats = client.get("/users/stats").json()
        assert stats["total"] == 2
        assert stats["by_role"]["ops"] == 1

        actions = [entry["action"] for entry in client.get("/activity", params={"user_id": user_id}).json()["entries"]]
        assert actions == ["reactivated", "deactivated", "role_changed", "created"]

        client.post("/auth/logout")
        _login(client, "ops@bvg.com", "ops123")
        assert client.get("/users").status_code == 403


def test_refresh_applies_directory_changes(tmp_path: Path) -> None:
    app = create_app(settings=_settings(tmp_path))

    with TestClient(app) as client:
        assert client.post("/auth/refresh").status_code == 401

        _login(client, "admin@bvg.com", "admin123")
        _login(client, "ops@bvg.com", "ops123")
        ops_id = client.get("/auth/session").json()["platform_user"]["id"]

        services = app.state.services
        database = services.database
        database.update_user(ops_id, {"name": "Operations Lead"})

        refreshed = client.post("/auth/refresh").json()
        assert refreshed["user"]["name"] == "Operations Lead"
        assert refreshed["platform_user"]["name"] == "Operations Lead"


def test_edge_mode_publishes_probe_identity(tmp_path: Path) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["cookie"] = request.headers.get("cookie")
        return httpx.Response(200, json={"email": "ops@bvg.com", "name": "Ops Team"})

    settings = _settings(tmp_path, hostname="dashboard.bvg.com")
    edge_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://dashboard.bvg.com")
    services = build_services(settings, edge_client=edge_client)
    app = create_app(services=services)

    with TestClient(app) as client:
        client.cookies.set("CF_Authorization", "edge-token")
        body = client.get("/auth/session").json()

        assert body["is_authenticated"] is True
        assert body["auth_mode"] == "edge"
        assert body["user"]["role"] == "admin"
        assert body["platform_user"]["auth_provider"] == "edge"
        assert seen["cookie"] == "CF_Authorization=edge-token"

        login = _login(client, "admin@bvg.com", "admin123")
        assert login.json()["reload"] is True

        logout = client.post("/auth/logout", follow_redirects=False)
        assert logout.status_code == 303
        assert logout.headers["location"] == "/cdn-cgi/access/logout"


def test_health_reports_mode(tmp_path: Path) -> None:
    app = create_app(settings=_settings(tmp_path, disable_edge_auth=True, hostname="dashboard.bvg.com"))

    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok", "auth_mode": "local"}
