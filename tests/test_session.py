"""Behavioural tests for the authentication session lifecycle."""

from __future__ import annotations

import asyncio
import json
import sys
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Optional

import httpx

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dashboard.database import Database, SQLiteDirectory
from dashboard.directory import DirectoryError
from dashboard.edge import LOGOUT_PATH, EdgeIdentityProbe
from dashboard.models import AuthMode, Role
from dashboard.session import AuthSession, PendingNavigation, SessionStatus
from dashboard.storage import EDGE_IDENTITY_KEY, LOCAL_SESSION_KEY, MappingStore
from dashboard.sync import DirectorySynchronizer


class BrokenSynchronizer:
    async def sync(self, email, display_name, provider, external_id=None):
        raise DirectoryError("directory offline")


class AuthSessionTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        database = Database(Path(self._tmp.name) / "directory.sqlite3")
        database.initialize()
        self.directory = SQLiteDirectory(database)
        self.synchronizer = DirectorySynchronizer(self.directory)
        self.store = MappingStore()
        self.navigator = PendingNavigation()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _probe(self, handler) -> EdgeIdentityProbe:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://dashboard.bvg.com")
        return EdgeIdentityProbe(client, cache=self.store)

    def _session(self, mode: AuthMode, probe: Optional[EdgeIdentityProbe] = None, synchronizer=None) -> AuthSession:
        return AuthSession(
            mode=mode,
            synchronizer=synchronizer or self.synchronizer,
            local_store=self.store,
            probe=probe,
            edge_cache=self.store,
            navigator=self.navigator,
            login_delay=0,
        )

    # ------------------------------------------------------------------
    # Edge mode
    # ------------------------------------------------------------------
    def test_edge_identity_on_empty_directory_bootstraps_admin(self) -> None:
        probe = self._probe(lambda request: httpx.Response(200, json={"email": "ops@bvg.com", "name": "Ops"}))
        session = self._session(AuthMode.EDGE, probe)
        self.assertTrue(session.is_loading)

        snapshot = asyncio.run(session.initialize())

        self.assertEqual(snapshot.status, SessionStatus.AUTHENTICATED)
        self.assertEqual(snapshot.auth_mode, AuthMode.EDGE)
        self.assertEqual(snapshot.user.role, Role.ADMIN)
        self.assertIsNotNone(snapshot.platform_user)
        self.assertEqual(snapshot.user.subject_id, str(snapshot.platform_user.id))
        self.assertEqual(snapshot.platform_user.auth_provider, "edge")

    def test_edge_identity_role_comes_from_directory(self) -> None:
        asyncio.run(self.synchronizer.sync("first@x.com", "First", "local"))
        probe = self._probe(lambda request: httpx.Response(200, json={"email": "ops@bvg.com"}))

        snapshot = asyncio.run(self._session(AuthMode.EDGE, probe).initialize())

        self.assertEqual(snapshot.user.role, Role.OPS)
        self.assertEqual(snapshot.user.display_name, "Ops")

    def test_edge_without_identity_falls_back_to_local(self) -> None:
        probe = self._probe(lambda request: httpx.Response(401))

        snapshot = asyncio.run(self._session(AuthMode.EDGE, probe).initialize())

        self.assertEqual(snapshot.status, SessionStatus.UNAUTHENTICATED)
        self.assertEqual(snapshot.auth_mode, AuthMode.LOCAL)
        self.assertIsNone(snapshot.user)

    def test_probe_exception_without_cache_is_unauthenticated(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("edge unreachable", request=request)

        snapshot = asyncio.run(self._session(AuthMode.EDGE, self._probe(handler)).initialize())

        self.assertFalse(snapshot.is_authenticated)
        self.assertFalse(snapshot.is_loading)

    def test_directory_failure_still_publishes_asserted_identity(self) -> None:
        probe = self._probe(lambda request: httpx.Response(200, json={"email": "maria@bvg.com", "id": "edge-9"}))
        session = self._session(AuthMode.EDGE, probe, synchronizer=BrokenSynchronizer())

        snapshot = asyncio.run(session.initialize())

        self.assertTrue(snapshot.is_authenticated)
        self.assertEqual(snapshot.user.subject_id, "edge-9")
        self.assertEqual(snapshot.user.role, Role.ADMIN)
        self.assertIsNone(snapshot.platform_user)

    def test_login_in_edge_mode_requests_reload(self) -> None:
        probe = self._probe(lambda request: httpx.Response(200, json={"email": "maria@bvg.com"}))
        session = self._session(AuthMode.EDGE, probe)
        asyncio.run(session.initialize())

        self.assertFalse(asyncio.run(session.login("admin@bvg.com", "admin123")))
        self.assertTrue(self.navigator.reload_requested)

    def test_logout_in_edge_mode_redirects_and_clears_cache(self) -> None:
        probe = self._probe(lambda request: httpx.Response(200, json={"email": "maria@bvg.com"}))
        session = self._session(AuthMode.EDGE, probe)
        asyncio.run(session.initialize())
        self.assertIsNotNone(self.store.get_item(EDGE_IDENTITY_KEY))

        session.logout()

        self.assertEqual(self.navigator.target, LOGOUT_PATH)
        self.assertIsNone(self.store.get_item(EDGE_IDENTITY_KEY))

    # ------------------------------------------------------------------
    # Local mode
    # ------------------------------------------------------------------
    def test_local_login_persists_and_restores(self) -> None:
        session = self._session(AuthMode.LOCAL)
        asyncio.run(session.initialize())
        self.assertFalse(session.is_authenticated)

        self.assertTrue(asyncio.run(session.login("admin@bvg.com", "admin123")))
        self.assertTrue(session.is_authenticated)
        self.assertEqual(session.auth_mode, AuthMode.LOCAL)
        self.assertEqual(session.user.role, Role.ADMIN)
        self.assertIsNotNone(self.store.get_item(LOCAL_SESSION_KEY))

        reloaded = asyncio.run(self._session(AuthMode.LOCAL).initialize())
        self.assertTrue(reloaded.is_authenticated)
        self.assertEqual(reloaded.user.email, "admin@bvg.com")
        self.assertEqual(reloaded.platform_user.auth_provider, "local")

    def test_wrong_password_leaves_state_unchanged(self) -> None:
        session = self._session(AuthMode.LOCAL)
        asyncio.run(session.initialize())

        self.assertFalse(asyncio.run(session.login("admin@bvg.com", "wrong")))
        self.assertFalse(asyncio.run(session.login("nobody@bvg.com", "admin123")))
        self.assertEqual(session.status, SessionStatus.UNAUTHENTICATED)
        self.assertIsNone(self.store.get_item(LOCAL_SESSION_KEY))

    def test_corrupt_local_record_is_discarded(self) -> None:
        self.store.set_item(LOCAL_SESSION_KEY, "{not json")

        snapshot = asyncio.run(self._session(AuthMode.LOCAL).initialize())

        self.assertEqual(snapshot.status, SessionStatus.UNAUTHENTICATED)
        self.assertIsNone(self.store.get_item(LOCAL_SESSION_KEY))

    def test_record_missing_fields_is_discarded(self) -> None:
        self.store.set_item(LOCAL_SESSION_KEY, json.dumps({"email": "admin@bvg.com"}))

        snapshot = asyncio.run(self._session(AuthMode.LOCAL).initialize())

        self.assertFalse(snapshot.is_authenticated)
        self.assertIsNone(self.store.get_item(LOCAL_SESSION_KEY))

    def test_local_logout_clears_slot(self) -> None:
        session = self._session(AuthMode.LOCAL)
        asyncio.run(session.initialize())
        asyncio.run(session.login("ops@bvg.com", "ops123"))

        session.logout()

        self.assertEqual(session.status, SessionStatus.UNAUTHENTICATED)
        self.assertIsNone(session.user)
        self.assertIsNone(self.store.get_item(LOCAL_SESSION_KEY))
        self.assertIsNone(self.navigator.target)

    # ------------------------------------------------------------------
    # Roles and refresh
    # ------------------------------------------------------------------
    def test_has_role(self) -> None:
        session = self._session(AuthMode.LOCAL)
        self.assertFalse(session.has_role([Role.ADMIN, Role.OPS, Role.READ]))

        asyncio.run(session.initialize())
        asyncio.run(session.login("admin@bvg.com", "admin123"))
        asyncio.run(session.login("ops@bvg.com", "ops123"))

        self.assertEqual(session.user.role, Role.OPS)
        self.assertTrue(session.has_role(["ops"]))
        self.assertTrue(session.has_role([Role.ADMIN, Role.OPS]))
        self.assertFalse(session.has_role([Role.ADMIN]))
        self.assertFalse(session.has_role([]))

    def test_refresh_picks_up_directory_role_change(self) -> None:
        session = self._session(AuthMode.LOCAL)
        asyncio.run(session.initialize())
        asyncio.run(session.login("admin@bvg.com", "admin123"))
        user_id = session.platform_user.id

        asyncio.run(self.directory.update_user(user_id, {"role": Role.READ}))
        self.assertEqual(session.user.role, Role.ADMIN)

        asyncio.run(session.refresh_user())

        self.assertEqual(session.user.role, Role.READ)
        self.assertEqual(session.platform_user.role, Role.READ)
        self.assertFalse(session.has_role([Role.ADMIN]))

    def test_refresh_without_user_is_noop(self) -> None:
        session = self._session(AuthMode.LOCAL)
        asyncio.run(session.initialize())

        asyncio.run(session.refresh_user())

        self.assertIsNone(session.user)
        self.assertEqual(asyncio.run(self.directory.list_users()), [])


if __name__ == "__main__":  # pragma: no cover - manual execution
    unittest.main()
