"""Domain models shared by the identity and directory layers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class Role(str, Enum):
    """Coarse permission tier gating dashboard sections."""

    ADMIN = "admin"
    OPS = "ops"
    READ = "read"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class AuthMode(str, Enum):
    """Which source of truth is authoritative for login."""

    EDGE = "edge"
    LOCAL = "local"


class ActivityAction(str, Enum):
    AUTO_REGISTERED = "auto_registered"
    LOGIN = "login"
    UPDATED = "updated"
    ROLE_CHANGED = "role_changed"
    DEACTIVATED = "deactivated"
    REACTIVATED = "reactivated"
    CREATED = "created"


ROLE_LABELS: Dict[Role, str] = {
    Role.ADMIN: "Administrator",
    Role.OPS: "Operator",
    Role.READ: "Read only",
}

ROLE_DESCRIPTIONS: Dict[Role, str] = {
    Role.ADMIN: "Full access: user management, configuration and every operation",
    Role.OPS: "Operations: approve orders and curate data, no configuration access",
    Role.READ: "Read only: browse information without making changes",
}

STATUS_LABELS: Dict[UserStatus, str] = {
    UserStatus.ACTIVE: "Active",
    UserStatus.INACTIVE: "Inactive",
    UserStatus.PENDING: "Pending",
}


def _parse_timestamp(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    # Directory columns without a zone are stored in UTC.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Identity:
    """An externally asserted principal for the current session."""

    subject_id: str
    email: str
    display_name: str
    role: Role
    created_at: datetime
    last_login: Optional[datetime] = None

    def with_directory(self, user: "DirectoryUser") -> "Identity":
        """Return a copy carrying the directory's id, name and role."""

        return replace(self, subject_id=str(user.id), display_name=user.name, role=user.role)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.subject_id,
            "email": self.email,
            "name": self.display_name,
            "role": self.role.value,
            "created_at": _format_timestamp(self.created_at),
            "last_login": _format_timestamp(self.last_login),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Identity":
        """Rebuild an identity from :meth:`to_dict` output.

        Raises ``ValueError``/``KeyError``/``TypeError`` when the record is
        malformed; callers treat that as a corrupt storage slot.
        """

        email = str(data["email"]).strip()
        if not email:
            raise ValueError("Stored identity has an empty email")
        created_at = _parse_timestamp(data.get("created_at"))
        if created_at is None:
            raise ValueError("Stored identity is missing its creation timestamp")
        return Identity(
            subject_id=str(data["id"]),
            email=email,
            display_name=str(data["name"]),
            role=Role(data["role"]),
            created_at=created_at,
            last_login=_parse_timestamp(data.get("last_login")),
        )


@dataclass(frozen=True)
class DirectoryUser:
    """System-of-record user stored in the directory."""

    id: int
    email: str
    name: str
    role: Role
    status: UserStatus
    auth_provider: str
    created_at: datetime
    updated_at: datetime
    external_id: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_by: Optional[int] = None
    updated_by: Optional[int] = None
    department: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "DirectoryUser":
        """Map a directory row (REST payload or SQLite row) to a user."""

        created_at = _parse_timestamp(row["created_at"])
        updated_at = _parse_timestamp(row.get("updated_at")) or created_at
        if created_at is None or updated_at is None:
            raise ValueError("Directory row is missing timestamps")
        return DirectoryUser(
            id=int(row["id"]),
            email=str(row["email"]),
            name=str(row["name"]),
            role=Role(row["role"]),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            auth_provider=str(row.get("auth_provider") or "manual"),
            external_id=row.get("external_id"),
            created_at=created_at,
            updated_at=updated_at,
            last_login_at=_parse_timestamp(row.get("last_login_at")),
            created_by=row.get("created_by"),
            updated_by=row.get("updated_by"),
            department=row.get("department"),
            phone=row.get("phone"),
            avatar_url=row.get("avatar_url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "status": self.status.value,
            "auth_provider": self.auth_provider,
            "external_id": self.external_id,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
            "last_login_at": _format_timestamp(self.last_login_at),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "department": self.department,
            "phone": self.phone,
            "avatar_url": self.avatar_url,
        }


@dataclass(frozen=True)
class ActivityLogEntry:
    """Append-only audit record."""

    user_email: str
    action: ActivityAction
    created_at: datetime
    user_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "ActivityLogEntry":
        created_at = _parse_timestamp(row["created_at"])
        if created_at is None:
            raise ValueError("Activity row is missing its timestamp")
        details = row.get("details") or {}
        return ActivityLogEntry(
            user_id=row.get("user_id"),
            user_email=str(row["user_email"]),
            action=ActivityAction(row["action"]),
            details=dict(details),
            created_at=created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_email": self.user_email,
            "action": self.action.value,
            "details": dict(self.details),
            "created_at": _format_timestamp(self.created_at),
        }


__all__ = [
    "ActivityAction",
    "ActivityLogEntry",
    "AuthMode",
    "DirectoryUser",
    "Identity",
    "ROLE_DESCRIPTIONS",
    "ROLE_LABELS",
    "Role",
    "STATUS_LABELS",
    "UserStatus",
]
