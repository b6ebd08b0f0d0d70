"""Session state machine publishing the resolved identity to the dashboard."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Protocol

from .credentials import CredentialTable
from .edge import LOGOUT_PATH, EdgeIdentityProbe
from .models import AuthMode, DirectoryUser, Identity, Role
from .storage import EDGE_IDENTITY_KEY, LOCAL_SESSION_KEY, SlotStore
from .sync import DirectorySynchronizer

logger = logging.getLogger("dashboard.session")

DEFAULT_LOGIN_DELAY = 0.3


class SessionStatus(str, Enum):
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class Navigator(Protocol):
    """Browser navigation requested by the session."""

    def assign(self, url: str) -> None:
        ...

    def reload(self) -> None:
        ...


class PendingNavigation:
    """Record navigation requests so the HTTP layer can turn them into redirects."""

    def __init__(self) -> None:
        self.target: Optional[str] = None
        self.reload_requested = False

    def assign(self, url: str) -> None:
        self.target = url

    def reload(self) -> None:
        self.reload_requested = True


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the session handed to the rest of the application."""

    status: SessionStatus
    user: Optional[Identity]
    auth_mode: AuthMode
    platform_user: Optional[DirectoryUser]

    @property
    def is_authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED

    @property
    def is_loading(self) -> bool:
        return self.status is SessionStatus.LOADING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_dict() if self.user else None,
            "is_authenticated": self.is_authenticated,
            "is_loading": self.is_loading,
            "auth_mode": self.auth_mode.value,
            "platform_user": self.platform_user.to_dict() if self.platform_user else None,
        }


def _normalise_roles(roles: Iterable[Role | str]) -> set[Role]:
    return {role if isinstance(role, Role) else Role(str(role).strip().lower()) for role in roles}


class AuthSession:
    """Owns the authentication lifecycle for one client.

    The session starts in ``loading`` and :meth:`initialize` moves it to
    ``authenticated`` or ``unauthenticated``. Edge identities come from the
    probe; otherwise a persisted local record is restored. Either way the
    directory is consulted before anything is published.
    """

    def __init__(
        self,
        *,
        mode: AuthMode,
        synchronizer: DirectorySynchronizer,
        local_store: SlotStore,
        probe: Optional[EdgeIdentityProbe] = None,
        edge_cache: Optional[SlotStore] = None,
        credentials: Optional[CredentialTable] = None,
        navigator: Optional[Navigator] = None,
        login_delay: float = DEFAULT_LOGIN_DELAY,
        logout_url: str = LOGOUT_PATH,
    ) -> None:
        self._selected_mode = mode
        self._auth_mode = mode
        self._synchronizer = synchronizer
        self._local_store = local_store
        self._probe = probe
        self._edge_cache = edge_cache
        self._credentials = credentials or CredentialTable()
        self._navigator: Navigator = navigator or PendingNavigation()
        self._login_delay = login_delay
        self._logout_url = logout_url

        self._status = SessionStatus.LOADING
        self._user: Optional[Identity] = None
        self._platform_user: Optional[DirectoryUser] = None

    # ------------------------------------------------------------------
    # Published state
    # ------------------------------------------------------------------
    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def user(self) -> Optional[Identity]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._status is SessionStatus.AUTHENTICATED

    @property
    def is_loading(self) -> bool:
        return self._status is SessionStatus.LOADING

    @property
    def auth_mode(self) -> AuthMode:
        return self._auth_mode

    @property
    def platform_user(self) -> Optional[DirectoryUser]:
        return self._platform_user

    @property
    def navigator(self) -> Navigator:
        return self._navigator

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self._status,
            user=self._user,
            auth_mode=self._auth_mode,
            platform_user=self._platform_user,
        )

    def has_role(self, roles: Iterable[Role | str]) -> bool:
        if self._status is not SessionStatus.AUTHENTICATED or self._user is None:
            return False
        return self._user.role in _normalise_roles(roles)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def initialize(self) -> SessionSnapshot:
        """Resolve who the user is and publish a terminal state."""

        self._status = SessionStatus.LOADING
        logger.debug("Initialising session in %s mode", self._selected_mode.value)

        if self._selected_mode is AuthMode.EDGE and self._probe is not None:
            identity = await self._probe_edge()
            if identity is not None:
                self._auth_mode = AuthMode.EDGE
                user, platform_user = await self._synchronize(identity, AuthMode.EDGE, identity.subject_id)
                self._publish(user, platform_user)
                logger.info("Authenticated %s via the edge proxy", user.email)
                return self.snapshot()
            logger.info("Edge proxy asserted no identity; falling back to local sessions")

        self._auth_mode = AuthMode.LOCAL
        stored = self._restore_local()
        if stored is not None:
            user, platform_user = await self._synchronize(stored, AuthMode.LOCAL)
            self._publish(user, platform_user)
            logger.info("Restored local session for %s", user.email)
            return self.snapshot()

        self._publish(None, None)
        logger.info("No authenticated user found")
        return self.snapshot()

    def resume(self, user: Identity, mode: AuthMode) -> SessionSnapshot:
        """Adopt an identity this session already published on an earlier load."""

        self._auth_mode = mode
        self._publish(user, None)
        return self.snapshot()

    async def login(self, email: str, password: str) -> bool:
        """Check local credentials; in edge mode ask the browser to reload instead."""

        if self._auth_mode is AuthMode.EDGE:
            logger.info("Login requested in edge mode; reloading so the edge proxy can challenge")
            self._navigator.reload()
            return False

        if self._login_delay > 0:
            await asyncio.sleep(self._login_delay)

        identity = self._credentials.authenticate(email, password)
        if identity is None:
            logger.warning("Failed local login attempt for %s", email.strip().lower())
            return False

        user, platform_user = await self._synchronize(identity, AuthMode.LOCAL)
        self._local_store.set_item(LOCAL_SESSION_KEY, json.dumps(user.to_dict()))
        self._publish(user, platform_user)
        logger.info("User %s signed in locally", user.email)
        return True

    def logout(self) -> None:
        if self._auth_mode is AuthMode.EDGE:
            if self._edge_cache is not None:
                self._edge_cache.remove_item(EDGE_IDENTITY_KEY)
            self._navigator.assign(self._logout_url)
            return

        self._local_store.remove_item(LOCAL_SESSION_KEY)
        self._publish(None, None)

    async def refresh_user(self) -> None:
        """Re-run directory sync for the current user in the established mode."""

        if self._status is not SessionStatus.AUTHENTICATED or self._user is None:
            return

        current = self._user
        platform_user = await self._synchronizer.sync(current.email, current.display_name, self._auth_mode.value)
        if platform_user is None:
            return

        self._platform_user = platform_user
        if platform_user.role != current.role or platform_user.name != current.display_name:
            logger.info(
                "Directory changed %s: role %s -> %s",
                current.email,
                current.role.value,
                platform_user.role.value,
            )
        self._user = current.with_directory(platform_user)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _probe_edge(self) -> Optional[Identity]:
        assert self._probe is not None
        try:
            return await self._probe.probe()
        except Exception:
            logger.exception("Edge identity probe raised unexpectedly")
            return None

    def _restore_local(self) -> Optional[Identity]:
        stored = self._local_store.get_item(LOCAL_SESSION_KEY)
        if not stored:
            return None
        try:
            return Identity.from_dict(json.loads(stored))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding corrupt local session record")
            self._local_store.remove_item(LOCAL_SESSION_KEY)
            return None

    async def _synchronize(
        self,
        identity: Identity,
        mode: AuthMode,
        external_id: Optional[str] = None,
    ) -> tuple[Identity, Optional[DirectoryUser]]:
        try:
            platform_user = await self._synchronizer.sync(
                identity.email, identity.display_name, mode.value, external_id
            )
        except Exception:
            logger.exception("Directory sync raised unexpectedly for %s", identity.email)
            platform_user = None

        if platform_user is None:
            logger.info("Directory sync unavailable; using asserted identity for %s", identity.email)
            return identity, None
        return identity.with_directory(platform_user), platform_user

    def _publish(self, user: Optional[Identity], platform_user: Optional[DirectoryUser]) -> None:
        self._user = user
        self._platform_user = platform_user
        self._status = SessionStatus.AUTHENTICATED if user is not None else SessionStatus.UNAUTHENTICATED


__all__ = [
    "AuthSession",
    "Navigator",
    "PendingNavigation",
    "SessionSnapshot",
    "SessionStatus",
]
