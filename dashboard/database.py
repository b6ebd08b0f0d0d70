"""SQLite-backed user directory for self-hosted and development deployments."""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional

import anyio

from .directory import ActivityRecord, AlreadyExists, Created, CreateResult, DirectoryError, NewUser, serialise_update
from .models import ActivityLogEntry, DirectoryUser


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the directory database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "directory.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


class Database:
    """Simple wrapper around SQLite for the ``users`` and activity tables."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'read' CHECK (role IN ('admin', 'ops', 'read')),
                    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive', 'pending')),
                    auth_provider TEXT NOT NULL DEFAULT 'manual',
                    external_id TEXT,
                    department TEXT,
                    phone TEXT,
                    avatar_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_login_at TEXT,
                    created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
                    updated_by INTEGER REFERENCES users(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS user_activity_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                    user_email TEXT NOT NULL,
                    action TEXT NOT NULL,
                    details TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_activity_user_id ON user_activity_log(user_id);
                CREATE INDEX IF NOT EXISTS idx_activity_created_at ON user_activity_log(created_at);
                """
            )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def create_user(self, new_user: NewUser) -> CreateResult:
        """Insert a user, reporting a taken email instead of raising."""

        now = _serialize_datetime(_current_timestamp())
        row = new_user.to_row()
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (
                        email, name, role, status, auth_provider, external_id,
                        department, phone, created_at, updated_at, last_login_at, created_by
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        row["email"],
                        row["name"],
                        row["role"],
                        row["status"],
                        row["auth_provider"],
                        row["external_id"],
                        row["department"],
                        row["phone"],
                        now,
                        now,
                        row["last_login_at"],
                        row["created_by"],
                    ),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" not in str(exc).upper():
                    raise DirectoryError(f"Rejected user record: {exc}") from exc
                return AlreadyExists(email=row["email"])
            user_id = cursor.lastrowid

        user = self.get_user(user_id)
        if user is None:
            raise DirectoryError("Failed to load user after creation")
        return Created(user=user)

    def get_user(self, user_id: int) -> Optional[DirectoryUser]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def find_by_email(self, email: str) -> Optional[DirectoryUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM users").fetchone()
        return int(row["total"])

    def list_users(self) -> List[DirectoryUser]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY name COLLATE NOCASE, id").fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: int, fields: Mapping[str, Any]) -> Optional[DirectoryUser]:
        payload = serialise_update(fields)
        if not payload:
            return self.get_user(user_id)

        updates = [f"{column} = ?" for column in payload]
        values: List[object] = list(payload.values())
        updates.append("updated_at = ?")
        values.append(_serialize_datetime(_current_timestamp()))
        values.append(user_id)
        query = f"UPDATE users SET {', '.join(updates)} WHERE id = ?"

        with self._connect() as conn:
            try:
                cursor = conn.execute(query, values)
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Invalid user update: {exc}") from exc
            if cursor.rowcount == 0:
                return None

        return self.get_user(user_id)

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------
    def record_activity(self, record: ActivityRecord) -> None:
        details = json.dumps(record.details) if record.details else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_activity_log (user_id, user_email, action, details, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.user_email,
                    record.action.value,
                    details,
                    _serialize_datetime(_current_timestamp()),
                ),
            )

    def list_activity(self, *, user_id: Optional[int] = None, limit: int = 100) -> List[ActivityLogEntry]:
        query = "SELECT * FROM user_activity_log"
        params: List[object] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_activity(row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> DirectoryUser:
        return DirectoryUser.from_row(dict(row))

    def _row_to_activity(self, row: sqlite3.Row) -> ActivityLogEntry:
        data = dict(row)
        raw_details = data.get("details")
        data["details"] = json.loads(raw_details) if raw_details else {}
        return ActivityLogEntry.from_row(data)


class SQLiteDirectory:
    """Async adapter running :class:`Database` calls in worker threads."""

    def __init__(self, database: Database) -> None:
        self._database = database

    @property
    def database(self) -> Database:
        return self._database

    async def _run(self, func, *args, **kwargs):
        try:
            return await anyio.to_thread.run_sync(lambda: func(*args, **kwargs))
        except sqlite3.DatabaseError as exc:
            raise DirectoryError(f"User directory query failed: {exc}") from exc

    async def find_by_email(self, email: str) -> Optional[DirectoryUser]:
        return await self._run(self._database.find_by_email, email)

    async def get_user(self, user_id: int) -> Optional[DirectoryUser]:
        return await self._run(self._database.get_user, user_id)

    async def is_empty(self) -> bool:
        return await self._run(self._database.count_users) == 0

    async def list_users(self) -> List[DirectoryUser]:
        return await self._run(self._database.list_users)

    async def create_user(self, new_user: NewUser) -> CreateResult:
        return await self._run(self._database.create_user, new_user)

    async def update_user(self, user_id: int, fields: Mapping[str, Any]) -> Optional[DirectoryUser]:
        return await self._run(self._database.update_user, user_id, fields)

    async def record_activity(self, record: ActivityRecord) -> None:
        await self._run(self._database.record_activity, record)

    async def list_activity(self, *, user_id: Optional[int] = None, limit: int = 100) -> List[ActivityLogEntry]:
        return await self._run(self._database.list_activity, user_id=user_id, limit=limit)


__all__ = ["Database", "SQLiteDirectory", "resolve_database_path"]
