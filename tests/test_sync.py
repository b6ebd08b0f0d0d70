from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from dashboard.database import Database, SQLiteDirectory
from dashboard.directory import AlreadyExists, Created, DirectoryError, NewUser
from dashboard.models import ActivityAction, Role
from dashboard.sync import DirectorySynchronizer

START = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _ticking_clock():
    counter = itertools.count()
    return lambda: START + timedelta(minutes=next(counter))


@pytest.fixture()
def directory(tmp_path: Path) -> SQLiteDirectory:
    database = Database(tmp_path / "directory.sqlite3")
    database.initialize()
    return SQLiteDirectory(database)


def test_first_user_is_bootstrapped_as_admin(directory: SQLiteDirectory) -> None:
    synchronizer = DirectorySynchronizer(directory, clock=_ticking_clock())

    user = asyncio.run(synchronizer.sync("ferran.torres@x.com", "", "edge", "sub-1"))

    assert user is not None
    assert user.role is Role.ADMIN
    assert user.name == "Ferran Torres"
    assert user.auth_provider == "edge"
    assert user.external_id == "sub-1"

    entries = asyncio.run(directory.list_activity())
    assert [entry.action for entry in entries] == [ActivityAction.AUTO_REGISTERED]
    assert entries[0].details == {"auth_provider": "edge", "default_role": "admin"}


def test_later_users_get_resolved_role(directory: SQLiteDirectory) -> None:
    synchronizer = DirectorySynchronizer(directory, clock=_ticking_clock())

    async def scenario():
        await synchronizer.sync("first@x.com", "First", "local")
        return (
            await synchronizer.sync("ops@bvg.com", "Ops", "edge"),
            await synchronizer.sync("someone@x.com", "Someone", "edge"),
        )

    ops, reader = asyncio.run(scenario())

    assert ops is not None and ops.role is Role.OPS
    assert reader is not None and reader.role is Role.READ


def test_repeat_sync_is_idempotent_and_advances_last_login(directory: SQLiteDirectory) -> None:
    synchronizer = DirectorySynchronizer(directory, clock=_ticking_clock())

    async def scenario():
        first = await synchronizer.sync("Maria@bvg.com", "Maria", "edge")
        second = await synchronizer.sync("maria@BVG.com", "Maria", "edge")
        return first, second, await directory.list_users()

    first, second, users = asyncio.run(scenario())

    assert first is not None and second is not None
    assert len(users) == 1
    assert first.id == second.id
    assert second.last_login_at is not None and first.last_login_at is not None
    assert second.last_login_at >= first.last_login_at

    actions = [entry.action for entry in asyncio.run(directory.list_activity())]
    assert actions == [ActivityAction.LOGIN, ActivityAction.AUTO_REGISTERED]


def test_empty_email_is_ignored(directory: SQLiteDirectory) -> None:
    assert asyncio.run(DirectorySynchronizer(directory).sync("  ", "Nobody", "edge")) is None


class RacingDirectory:
    """Answers ``not found`` first, then loses the insert to a concurrent writer."""

    def __init__(self, inner: SQLiteDirectory) -> None:
        self._inner = inner
        self._lookups = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def find_by_email(self, email):
        self._lookups += 1
        if self._lookups == 1:
            return None
        return await self._inner.find_by_email(email)

    async def create_user(self, new_user: NewUser):
        return AlreadyExists(email=new_user.email)


def test_concurrent_registration_rereads_existing_user(directory: SQLiteDirectory) -> None:
    existing = asyncio.run(directory.create_user(NewUser(email="maria@bvg.com", name="Maria", role=Role.OPS)))
    assert isinstance(existing, Created)

    synchronizer = DirectorySynchronizer(RacingDirectory(directory), clock=_ticking_clock())
    user = asyncio.run(synchronizer.sync("maria@bvg.com", "Maria", "edge"))

    assert user is not None
    assert user.id == existing.user.id
    assert user.role is Role.OPS
    # The first tick stamped the abandoned insert; the re-read login takes the next one.
    assert user.last_login_at == START + timedelta(minutes=1)


class FailingAuditDirectory(RacingDirectory):
    async def find_by_email(self, email):
        return await self._inner.find_by_email(email)

    async def create_user(self, new_user: NewUser):
        return await self._inner.create_user(new_user)

    async def record_activity(self, record):
        raise DirectoryError("audit table offline")


def test_audit_failures_do_not_fail_sync(directory: SQLiteDirectory) -> None:
    synchronizer = DirectorySynchronizer(FailingAuditDirectory(directory))

    user = asyncio.run(synchronizer.sync("maria@bvg.com", "Maria", "edge"))

    assert user is not None
    assert asyncio.run(directory.list_activity()) == []


class UnavailableDirectory:
    async def find_by_email(self, email):
        raise DirectoryError("connection refused")


def test_unreachable_directory_resolves_to_none() -> None:
    synchronizer = DirectorySynchronizer(UnavailableDirectory())

    assert asyncio.run(synchronizer.sync("maria@bvg.com", "Maria", "edge")) is None


class VanishingDirectory(RacingDirectory):
    """Loses the insert, then cannot find the row that beat it either."""

    async def find_by_email(self, email):
        self._lookups += 1
        return None


def test_lost_insert_without_reread_resolves_to_none(directory: SQLiteDirectory) -> None:
    racing = VanishingDirectory(directory)
    synchronizer = DirectorySynchronizer(racing, clock=_ticking_clock())

    assert asyncio.run(synchronizer.sync("maria@bvg.com", "Maria", "edge")) is None
    assert racing._lookups == 2
    assert asyncio.run(directory.list_activity()) == []


class FailingInsertDirectory(RacingDirectory):
    """The insert errors out even though another writer stored the user."""

    async def create_user(self, new_user: NewUser):
        raise DirectoryError("duplicate key value violates unique constraint")


def test_failed_insert_rereads_existing_user(directory: SQLiteDirectory) -> None:
    existing = asyncio.run(directory.create_user(NewUser(email="maria@bvg.com", name="Maria", role=Role.OPS)))
    assert isinstance(existing, Created)

    racing = FailingInsertDirectory(directory)
    synchronizer = DirectorySynchronizer(racing, clock=_ticking_clock())
    user = asyncio.run(synchronizer.sync("maria@bvg.com", "Maria", "edge"))

    assert racing._lookups == 2
    assert user is not None
    assert user.id == existing.user.id
    actions = [entry.action for entry in asyncio.run(directory.list_activity())]
    assert actions == [ActivityAction.LOGIN]
