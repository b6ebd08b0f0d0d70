"""Reconcile externally asserted identities with the user directory."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .directory import ActivityRecord, AlreadyExists, Directory, DirectoryError, NewUser
from .edge import name_from_email
from .models import ActivityAction, DirectoryUser, Role, UserStatus
from .roles import DEFAULT_RULES, RoleRules

logger = logging.getLogger("dashboard.sync")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DirectorySynchronizer:
    """Auto-register first-time users and record repeat logins.

    The synchronizer is the only writer of directory state during login.
    Every public method resolves to a user or ``None``; directory failures
    are logged here and never propagate to the session.
    """

    def __init__(
        self,
        directory: Directory,
        *,
        rules: RoleRules = DEFAULT_RULES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._directory = directory
        self._rules = rules
        self._clock = clock

    @property
    def directory(self) -> Directory:
        return self._directory

    async def sync(
        self,
        email: str,
        display_name: str,
        provider: str,
        external_id: Optional[str] = None,
    ) -> Optional[DirectoryUser]:
        normalized = email.strip().lower()
        if not normalized:
            return None
        try:
            user = await self._directory.find_by_email(normalized)
            if user is None:
                return await self._register(normalized, display_name, provider, external_id)
            return await self._record_login(user, provider)
        except DirectoryError as exc:
            logger.warning("Directory sync failed for %s: %s", normalized, exc)
            return None

    async def _register(
        self,
        email: str,
        display_name: str,
        provider: str,
        external_id: Optional[str],
    ) -> Optional[DirectoryUser]:
        bootstrap = await self._directory.is_empty()
        role = Role.ADMIN if bootstrap else self._rules.resolve(email)
        new_user = NewUser(
            email=email,
            name=display_name.strip() or name_from_email(email),
            role=role,
            status=UserStatus.ACTIVE,
            auth_provider=provider,
            external_id=external_id,
            last_login_at=self._clock(),
        )

        try:
            result = await self._directory.create_user(new_user)
        except DirectoryError as exc:
            logger.warning("Creating directory user %s failed: %s", email, exc)
            result = AlreadyExists(email=email)

        if isinstance(result, AlreadyExists):
            existing = await self._directory.find_by_email(email)
            if existing is None:
                logger.error("Directory user %s could not be created or re-read", email)
                return None
            logger.info("Directory user %s was registered concurrently; reusing it", email)
            return await self._record_login(existing, provider)

        user = result.user
        await self._audit(
            ActivityRecord(
                user_email=user.email,
                action=ActivityAction.AUTO_REGISTERED,
                user_id=user.id,
                details={"auth_provider": provider, "default_role": role.value},
            )
        )
        if bootstrap:
            logger.info("Bootstrap administrator %s auto-registered", user.email)
        else:
            logger.info("New user %s auto-registered with role %s", user.email, role.value)
        return user

    async def _record_login(self, user: DirectoryUser, provider: str) -> DirectoryUser:
        seen_at = self._clock()
        refreshed: Optional[DirectoryUser] = None
        try:
            refreshed = await self._directory.update_user(user.id, {"last_login_at": seen_at})
        except (DirectoryError, ValueError) as exc:
            logger.warning("Failed to update last login for %s: %s", user.email, exc)

        await self._audit(
            ActivityRecord(
                user_email=user.email,
                action=ActivityAction.LOGIN,
                user_id=user.id,
                details={"auth_provider": provider},
            )
        )
        return refreshed if refreshed is not None else user

    async def _audit(self, record: ActivityRecord) -> None:
        try:
            await self._directory.record_activity(record)
        except DirectoryError as exc:
            logger.warning(
                "Failed to log %s activity for %s: %s", record.action.value, record.user_email, exc
            )


__all__ = ["DirectorySynchronizer"]
