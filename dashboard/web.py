"""HTTP surface publishing the session interface and user administration."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware

from .application import Services, build_services
from .config import Settings, load_settings
from .directory import DirectoryError
from .models import AuthMode, Identity, Role, UserStatus
from .session import AuthSession, PendingNavigation

logger = logging.getLogger("dashboard.web")

SESSION_COOKIE_NAME = "dashboard_session"
PUBLISHED_KEY = "published_session"
INVALID_CREDENTIALS = "Invalid email or password. Please try again."


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)


class CreateUserRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    name: str = Field(..., min_length=1, max_length=200)
    role: Role = Role.READ
    status: UserStatus = UserStatus.ACTIVE
    department: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=64)


class UpdateUserRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    role: Optional[Role] = None
    status: Optional[UserStatus] = None
    department: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=64)


def _actor_id(identity: Identity) -> Optional[int]:
    return int(identity.subject_id) if identity.subject_id.isdigit() else None


def create_app(
    *,
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """Create the dashboard identity application."""

    if settings is None:
        settings = services.settings if services is not None else load_settings()
    if services is None:
        services = build_services(settings)

    if not settings.session_secret:
        raise RuntimeError("DASHBOARD_SESSION_SECRET must be configured to serve the dashboard")

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await services.aclose()

    app = FastAPI(
        title="Logistics Dashboard Identity",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.services = services
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=SESSION_COOKIE_NAME,
        https_only=settings.session_secure,
        same_site="lax",
        max_age=60 * 60 * 24 * 7,
    )

    router = APIRouter()

    def _edge_cookies(request: Request) -> Dict[str, str]:
        return {name: value for name, value in request.cookies.items() if name != SESSION_COOKIE_NAME}

    def _new_session(request: Request) -> AuthSession:
        return services.new_session(request.session, cookies=_edge_cookies(request))

    def _remember(request: Request, session: AuthSession) -> None:
        if session.is_authenticated and session.user is not None:
            request.session[PUBLISHED_KEY] = {
                "user": session.user.to_dict(),
                "auth_mode": session.auth_mode.value,
            }
        else:
            request.session.pop(PUBLISHED_KEY, None)

    def _resume(request: Request) -> Optional[AuthSession]:
        raw = request.session.get(PUBLISHED_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            user = Identity.from_dict(raw["user"])
            mode = AuthMode(raw["auth_mode"])
        except (KeyError, TypeError, ValueError):
            request.session.pop(PUBLISHED_KEY, None)
            return None
        session = _new_session(request)
        session.resume(user, mode)
        return session

    def _require_role(request: Request, *roles: Role) -> Identity:
        session = _resume(request)
        if session is None or session.user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
        if not session.has_role(roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return session.user

    @router.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok", "auth_mode": services.mode.value}

    @router.get("/auth/session")
    async def current_session(request: Request) -> Dict[str, Any]:
        session = _new_session(request)
        snapshot = await session.initialize()
        _remember(request, session)
        return snapshot.to_dict()

    @router.post("/auth/login")
    async def login(request: Request, payload: LoginRequest):
        session = _new_session(request)
        await session.initialize()
        success = await session.login(payload.email, payload.password)

        navigator = session.navigator
        if isinstance(navigator, PendingNavigation) and navigator.reload_requested:
            return JSONResponse({"success": False, "reload": True, **session.snapshot().to_dict()})

        if not success:
            return JSONResponse(
                {"success": False, "detail": INVALID_CREDENTIALS},
                status_code=status.HTTP_401_UNAUTHORIZED,
            )

        _remember(request, session)
        return {"success": True, **session.snapshot().to_dict()}

    @router.post("/auth/logout")
    async def logout(request: Request):
        session = _resume(request) or _new_session(request)
        session.logout()
        request.session.pop(PUBLISHED_KEY, None)

        navigator = session.navigator
        if isinstance(navigator, PendingNavigation) and navigator.target:
            return RedirectResponse(navigator.target, status_code=status.HTTP_303_SEE_OTHER)
        return session.snapshot().to_dict()

    @router.post("/auth/refresh")
    async def refresh(request: Request) -> Dict[str, Any]:
        session = _resume(request)
        if session is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
        await session.refresh_user()
        _remember(request, session)
        return session.snapshot().to_dict()

    @router.get("/auth/has-role")
    async def has_role(request: Request, roles: List[str] = Query(default=[])) -> Dict[str, bool]:
        try:
            wanted = [Role(value.strip().lower()) for value in roles]
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        session = _resume(request)
        return {"allowed": session.has_role(wanted) if session is not None else False}

    @router.get("/users")
    async def list_users(request: Request) -> Dict[str, Any]:
        _require_role(request, Role.ADMIN)
        users = await services.administration.list_users()
        return {"users": [user.to_dict() for user in users]}

    @router.get("/users/stats")
    async def user_stats(request: Request) -> Dict[str, Any]:
        _require_role(request, Role.ADMIN)
        stats = await services.administration.stats()
        return stats.to_dict()

    @router.post("/users", status_code=status.HTTP_201_CREATED)
    async def create_user(request: Request, payload: CreateUserRequest) -> Dict[str, Any]:
        actor = _require_role(request, Role.ADMIN)
        try:
            user = await services.administration.create_user(
                email=payload.email,
                name=payload.name,
                role=payload.role,
                status=payload.status,
                department=payload.department,
                phone=payload.phone,
                created_by=_actor_id(actor),
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        logger.info("User %s created by %s", user.email, actor.email)
        return user.to_dict()

    @router.patch("/users/{user_id}")
    async def update_user(request: Request, user_id: int, payload: UpdateUserRequest) -> Dict[str, Any]:
        actor = _require_role(request, Role.ADMIN)
        try:
            user = await services.administration.update_user(
                user_id,
                name=payload.name,
                role=payload.role,
                status=payload.status,
                department=payload.department,
                phone=payload.phone,
                updated_by=_actor_id(actor),
            )
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return user.to_dict()

    @router.post("/users/{user_id}/deactivate")
    async def deactivate_user(request: Request, user_id: int) -> Dict[str, Any]:
        actor = _require_role(request, Role.ADMIN)
        try:
            user = await services.administration.deactivate_user(user_id, deactivated_by=_actor_id(actor))
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return user.to_dict()

    @router.post("/users/{user_id}/reactivate")
    async def reactivate_user(request: Request, user_id: int) -> Dict[str, Any]:
        actor = _require_role(request, Role.ADMIN)
        try:
            user = await services.administration.reactivate_user(user_id, reactivated_by=_actor_id(actor))
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return user.to_dict()

    @router.get("/activity")
    async def activity(
        request: Request,
        user_id: Optional[int] = None,
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> Dict[str, Any]:
        _require_role(request, Role.ADMIN)
        entries = await services.administration.list_activity(user_id=user_id, limit=limit)
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.exception_handler(DirectoryError)
    async def directory_unavailable(_request: Request, exc: DirectoryError) -> JSONResponse:
        logger.error("User directory request failed: %s", exc)
        return JSONResponse(
            {"detail": "The user directory is unavailable"},
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    app.include_router(router)
    return app


__all__ = ["create_app", "SESSION_COOKIE_NAME"]
