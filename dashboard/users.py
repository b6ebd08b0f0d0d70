"""Administrative operations on directory users, each leaving an audit entry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .directory import ActivityRecord, AlreadyExists, Directory, DirectoryError, NewUser
from .models import ActivityAction, ActivityLogEntry, DirectoryUser, Role, UserStatus

logger = logging.getLogger("dashboard.users")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UserStats:
    total: int
    by_role: Dict[Role, int]
    by_status: Dict[UserStatus, int]
    active_last_week: int
    active_last_month: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_role": {role.value: count for role, count in self.by_role.items()},
            "by_status": {status.value: count for status, count in self.by_status.items()},
            "active_last_week": self.active_last_week,
            "active_last_month": self.active_last_month,
        }


def compute_stats(users: List[DirectoryUser], *, now: Optional[datetime] = None) -> UserStats:
    current = now or _utcnow()
    week_ago = current - timedelta(days=7)
    month_ago = current - timedelta(days=30)

    by_role = {role: 0 for role in Role}
    by_status = {status: 0 for status in UserStatus}
    active_week = active_month = 0
    for user in users:
        by_role[user.role] += 1
        by_status[user.status] += 1
        if user.last_login_at is not None:
            if user.last_login_at > week_ago:
                active_week += 1
            if user.last_login_at > month_ago:
                active_month += 1

    return UserStats(
        total=len(users),
        by_role=by_role,
        by_status=by_status,
        active_last_week=active_week,
        active_last_month=active_month,
    )


class UserAdministration:
    """Manual user management used by administrators."""

    def __init__(self, directory: Directory, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._directory = directory
        self._clock = clock

    async def list_users(self) -> List[DirectoryUser]:
        return await self._directory.list_users()

    async def get_user(self, user_id: int) -> Optional[DirectoryUser]:
        return await self._directory.get_user(user_id)

    async def create_user(
        self,
        *,
        email: str,
        name: str,
        role: Role = Role.READ,
        status: UserStatus = UserStatus.ACTIVE,
        department: Optional[str] = None,
        phone: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> DirectoryUser:
        normalized_email = email.strip().lower()
        normalized_name = name.strip()
        if not normalized_email or "@" not in normalized_email:
            raise ValueError("A valid email address is required")
        if not normalized_name:
            raise ValueError("Name must not be empty")

        result = await self._directory.create_user(
            NewUser(
                email=normalized_email,
                name=normalized_name,
                role=role,
                status=status,
                auth_provider="manual",
                created_by=created_by,
                department=department,
                phone=phone,
            )
        )
        if isinstance(result, AlreadyExists):
            raise ValueError("A user with that email already exists")

        user = result.user
        await self._audit(user, ActivityAction.CREATED, {"created_by": created_by})
        return user

    async def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
        department: Optional[str] = None,
        phone: Optional[str] = None,
        updated_by: Optional[int] = None,
    ) -> DirectoryUser:
        current = await self._directory.get_user(user_id)
        if current is None:
            raise LookupError(f"User {user_id} not found")

        fields: Dict[str, Any] = {"updated_by": updated_by}
        if name is not None:
            if not name.strip():
                raise ValueError("Name must not be empty")
            fields["name"] = name.strip()
        if role is not None:
            fields["role"] = role
        if status is not None:
            fields["status"] = status
        if department is not None:
            fields["department"] = department or None
        if phone is not None:
            fields["phone"] = phone or None

        updated = await self._directory.update_user(user_id, fields)
        if updated is None:
            raise LookupError(f"User {user_id} not found")

        changes: Dict[str, Any] = {"updated_by": updated_by}
        if role is not None and role != current.role:
            changes["role_from"] = current.role.value
            changes["role_to"] = role.value
        if status is not None and status != current.status:
            changes["status_from"] = current.status.value
            changes["status_to"] = status.value

        action = ActivityAction.ROLE_CHANGED if "role_to" in changes else ActivityAction.UPDATED
        await self._audit(updated, action, changes)
        return updated

    async def deactivate_user(self, user_id: int, *, deactivated_by: Optional[int] = None) -> DirectoryUser:
        return await self._set_status(
            user_id, UserStatus.INACTIVE, ActivityAction.DEACTIVATED, {"deleted_by": deactivated_by}, deactivated_by
        )

    async def reactivate_user(self, user_id: int, *, reactivated_by: Optional[int] = None) -> DirectoryUser:
        return await self._set_status(
            user_id, UserStatus.ACTIVE, ActivityAction.REACTIVATED, {"reactivated_by": reactivated_by}, reactivated_by
        )

    async def list_activity(self, *, user_id: Optional[int] = None, limit: int = 100) -> List[ActivityLogEntry]:
        return await self._directory.list_activity(user_id=user_id, limit=limit)

    async def stats(self) -> UserStats:
        return compute_stats(await self._directory.list_users(), now=self._clock())

    async def _set_status(
        self,
        user_id: int,
        status: UserStatus,
        action: ActivityAction,
        details: Dict[str, Any],
        actor: Optional[int],
    ) -> DirectoryUser:
        updated = await self._directory.update_user(user_id, {"status": status, "updated_by": actor})
        if updated is None:
            raise LookupError(f"User {user_id} not found")
        await self._audit(updated, action, details)
        return updated

    async def _audit(self, user: DirectoryUser, action: ActivityAction, details: Dict[str, Any]) -> None:
        try:
            await self._directory.record_activity(
                ActivityRecord(user_email=user.email, action=action, user_id=user.id, details=details)
            )
        except DirectoryError as exc:
            logger.warning("Failed to log %s activity for %s: %s", action.value, user.email, exc)


__all__ = ["UserAdministration", "UserStats", "compute_stats"]
