"""Wire settings into the directory, synchronizer and per-load sessions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import MutableMapping, Optional, Tuple

import httpx

from .config import Settings
from .credentials import CredentialTable
from .database import Database, SQLiteDirectory, resolve_database_path
from .directory import Directory, RestDirectory
from .edge import EdgeIdentityProbe
from .models import AuthMode
from .modes import select_mode
from .session import AuthSession, PendingNavigation
from .storage import MappingStore
from .sync import DirectorySynchronizer
from .users import UserAdministration

logger = logging.getLogger("dashboard.application")


def build_directory(settings: Settings) -> Tuple[Directory, Optional[Database]]:
    """Return the REST directory when configured, otherwise SQLite."""

    if settings.directory_url:
        client = RestDirectory.build_client(
            settings.directory_url,
            api_key=settings.directory_api_key,
            timeout=settings.http_timeout,
        )
        logger.info("Using REST user directory at %s", settings.directory_url)
        return RestDirectory(client), None

    db_path = resolve_database_path(settings.database_path)
    database = Database(db_path)
    database.initialize()
    logger.info("Using SQLite user directory at %s", db_path)
    return SQLiteDirectory(database), database


def _edge_base_url(settings: Settings) -> str:
    if settings.edge_base_url:
        return settings.edge_base_url.rstrip("/")
    if settings.hostname:
        return f"https://{settings.hostname}"
    raise RuntimeError("DASHBOARD_EDGE_BASE_URL or DASHBOARD_HOSTNAME must be set to use edge authentication")


@dataclass
class Services:
    """Long-lived collaborators shared by every page load."""

    settings: Settings
    mode: AuthMode
    directory: Directory
    synchronizer: DirectorySynchronizer
    administration: UserAdministration
    credentials: CredentialTable
    edge_client: Optional[httpx.AsyncClient] = None
    database: Optional[Database] = None

    def new_session(
        self,
        storage: MutableMapping[str, object],
        *,
        cookies: Optional[dict] = None,
    ) -> AuthSession:
        """Create the session for one application load.

        ``storage`` holds both client-side slots; in the web app it is the
        signed cookie session.
        """

        store = MappingStore(storage)
        probe: Optional[EdgeIdentityProbe] = None
        if self.mode is AuthMode.EDGE and self.edge_client is not None:
            probe = EdgeIdentityProbe(
                self.edge_client,
                cache=store,
                rules=self.settings.auth.rules,
                cookies=cookies,
            )
        return AuthSession(
            mode=self.mode,
            synchronizer=self.synchronizer,
            local_store=store,
            probe=probe,
            edge_cache=store,
            credentials=self.credentials,
            navigator=PendingNavigation(),
            login_delay=self.settings.login_delay,
        )

    async def aclose(self) -> None:
        if self.edge_client is not None:
            await self.edge_client.aclose()
        if isinstance(self.directory, RestDirectory):
            await self.directory.aclose()


def build_services(
    settings: Settings,
    *,
    directory: Optional[Directory] = None,
    edge_client: Optional[httpx.AsyncClient] = None,
    mode: Optional[AuthMode] = None,
) -> Services:
    if mode is None:
        mode = select_mode(settings.hostname, settings.disable_edge_auth)
    logger.info("Authentication mode for %s: %s", settings.hostname or "<unset host>", mode.value)

    database: Optional[Database] = None
    if directory is None:
        directory, database = build_directory(settings)

    if edge_client is None and mode is AuthMode.EDGE:
        edge_client = httpx.AsyncClient(base_url=_edge_base_url(settings), timeout=settings.http_timeout)

    return Services(
        settings=settings,
        mode=mode,
        directory=directory,
        synchronizer=DirectorySynchronizer(directory, rules=settings.auth.rules),
        administration=UserAdministration(directory),
        credentials=CredentialTable(settings.auth.local_accounts),
        edge_client=edge_client,
        database=database,
    )


__all__ = ["Services", "build_directory", "build_services"]
