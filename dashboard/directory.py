"""User directory contract and the PostgREST-backed implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

import httpx

from .models import ActivityAction, ActivityLogEntry, DirectoryUser, Role, UserStatus

logger = logging.getLogger("dashboard.directory")

USERS_RESOURCE = "/users"
ACTIVITY_RESOURCE = "/user_activity_log"

_UNIQUE_VIOLATION_MARKERS = ("23505", "duplicate key", "unique constraint")

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "role",
        "status",
        "department",
        "phone",
        "avatar_url",
        "last_login_at",
        "updated_by",
    }
)


class DirectoryError(RuntimeError):
    """Raised when the directory cannot be reached or answers unexpectedly."""


@dataclass(frozen=True)
class NewUser:
    """Fields supplied when creating a directory record."""

    email: str
    name: str
    role: Role = Role.READ
    status: UserStatus = UserStatus.ACTIVE
    auth_provider: str = "manual"
    external_id: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_by: Optional[int] = None
    department: Optional[str] = None
    phone: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "email": self.email.strip().lower(),
            "name": self.name,
            "role": self.role.value,
            "status": self.status.value,
            "auth_provider": self.auth_provider,
            "external_id": self.external_id,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_by": self.created_by,
            "department": self.department or None,
            "phone": self.phone or None,
        }


@dataclass(frozen=True)
class Created:
    user: DirectoryUser


@dataclass(frozen=True)
class AlreadyExists:
    """The email is already taken; the caller decides how to re-read."""

    email: str


CreateResult = Union[Created, AlreadyExists]


@dataclass(frozen=True)
class ActivityRecord:
    """An audit entry waiting to be written."""

    user_email: str
    action: ActivityAction
    user_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


class Directory(Protocol):
    async def find_by_email(self, email: str) -> Optional[DirectoryUser]:
        ...

    async def get_user(self, user_id: int) -> Optional[DirectoryUser]:
        ...

    async def is_empty(self) -> bool:
        ...

    async def list_users(self) -> List[DirectoryUser]:
        ...

    async def create_user(self, new_user: NewUser) -> CreateResult:
        ...

    async def update_user(self, user_id: int, fields: Mapping[str, Any]) -> Optional[DirectoryUser]:
        ...

    async def record_activity(self, record: ActivityRecord) -> None:
        ...

    async def list_activity(self, *, user_id: Optional[int] = None, limit: int = 100) -> List[ActivityLogEntry]:
        ...


def serialise_update(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate a partial update and convert enums/timestamps for storage."""

    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported user fields: {', '.join(sorted(unknown))}")

    payload: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, (Role, UserStatus)):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        payload[key] = value
    return payload


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "details", "hint", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


def _is_unique_violation(response: httpx.Response) -> bool:
    if response.status_code == 409:
        return True
    body = response.text.lower()
    return any(marker in body for marker in _UNIQUE_VIOLATION_MARKERS)


class RestDirectory:
    """Directory backed by a PostgREST style HTTP API."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @staticmethod
    def build_client(
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
    ) -> httpx.AsyncClient:
        cleaned = (base_url or "").strip().rstrip("/")
        if not cleaned:
            raise ValueError("Directory base URL must not be empty")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        return httpx.AsyncClient(base_url=cleaned, headers=headers, timeout=timeout)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            return await self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise DirectoryError(f"Failed to contact the user directory: {exc}") from exc

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if response.status_code < 400:
            return
        try:
            parsed = response.json()
        except ValueError:
            parsed = None
        message = _extract_error_message(parsed, f"{action} failed with status {response.status_code}")
        raise DirectoryError(message)

    def _rows(self, response: httpx.Response) -> List[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError as exc:
            raise DirectoryError("User directory returned an invalid response") from exc
        if not isinstance(data, list):
            raise DirectoryError("User directory returned an unexpected response payload")
        return [row for row in data if isinstance(row, dict)]

    def _users(self, response: httpx.Response) -> List[DirectoryUser]:
        try:
            return [DirectoryUser.from_row(row) for row in self._rows(response)]
        except (KeyError, TypeError, ValueError) as exc:
            raise DirectoryError("User directory row was missing required fields") from exc

    async def find_by_email(self, email: str) -> Optional[DirectoryUser]:
        response = await self._request(
            "GET", USERS_RESOURCE, params={"email": f"eq.{email.strip().lower()}"}
        )
        self._raise_for_status(response, "User lookup")
        users = self._users(response)
        return users[0] if users else None

    async def get_user(self, user_id: int) -> Optional[DirectoryUser]:
        response = await self._request("GET", USERS_RESOURCE, params={"id": f"eq.{user_id}"})
        self._raise_for_status(response, "User lookup")
        users = self._users(response)
        return users[0] if users else None

    async def is_empty(self) -> bool:
        response = await self._request("GET", USERS_RESOURCE, params={"select": "id", "limit": 1})
        self._raise_for_status(response, "User count")
        return len(self._rows(response)) == 0

    async def list_users(self) -> List[DirectoryUser]:
        response = await self._request("GET", USERS_RESOURCE, params={"order": "name.asc"})
        self._raise_for_status(response, "User listing")
        return self._users(response)

    async def create_user(self, new_user: NewUser) -> CreateResult:
        response = await self._request(
            "POST", USERS_RESOURCE, json=new_user.to_row(), prefer="return=representation"
        )
        if response.status_code >= 400 and _is_unique_violation(response):
            logger.info("Directory already holds a user for %s", new_user.email)
            return AlreadyExists(email=new_user.email.strip().lower())
        self._raise_for_status(response, "User creation")
        users = self._users(response)
        if not users:
            raise DirectoryError("User directory did not return the created user")
        return Created(user=users[0])

    async def update_user(self, user_id: int, fields: Mapping[str, Any]) -> Optional[DirectoryUser]:
        payload = serialise_update(fields)
        response = await self._request(
            "PATCH",
            USERS_RESOURCE,
            params={"id": f"eq.{user_id}"},
            json=payload,
            prefer="return=representation",
        )
        self._raise_for_status(response, "User update")
        users = self._users(response)
        return users[0] if users else None

    async def record_activity(self, record: ActivityRecord) -> None:
        response = await self._request(
            "POST",
            ACTIVITY_RESOURCE,
            json={
                "user_id": record.user_id,
                "user_email": record.user_email,
                "action": record.action.value,
                "details": record.details or None,
            },
        )
        self._raise_for_status(response, "Activity logging")

    async def list_activity(self, *, user_id: Optional[int] = None, limit: int = 100) -> List[ActivityLogEntry]:
        params: Dict[str, Any] = {"order": "created_at.desc", "limit": limit}
        if user_id is not None:
            params["user_id"] = f"eq.{user_id}"
        response = await self._request("GET", ACTIVITY_RESOURCE, params=params)
        self._raise_for_status(response, "Activity listing")
        try:
            return [ActivityLogEntry.from_row(row) for row in self._rows(response)]
        except (KeyError, TypeError, ValueError) as exc:
            raise DirectoryError("Activity row was missing required fields") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = [
    "ActivityRecord",
    "AlreadyExists",
    "CreateResult",
    "Created",
    "Directory",
    "DirectoryError",
    "NewUser",
    "RestDirectory",
    "UPDATABLE_FIELDS",
    "serialise_update",
]
