"""Static credential table used when the edge proxy is not in front of us."""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Mapping, Optional

from .models import Identity, Role


@dataclass(frozen=True)
class LocalAccount:
    """A development login and the identity it produces."""

    email: str
    password: str
    subject_id: str
    name: str
    role: Role

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "LocalAccount":
        required_fields = {"email", "password", "name", "role"}
        missing = required_fields - data.keys()
        if missing:
            raise ValueError(f"Missing required local user fields: {', '.join(sorted(missing))}")

        email = str(data["email"]).strip().lower()
        password = str(data["password"])
        if not email or not password:
            raise ValueError("Local users need a non-empty email and password")
        return LocalAccount(
            email=email,
            password=password,
            subject_id=str(data.get("id") or email),
            name=str(data["name"]),
            role=Role(str(data["role"])),
        )

    def to_identity(self, *, now: Optional[datetime] = None) -> Identity:
        timestamp = now or datetime.now(timezone.utc)
        return Identity(
            subject_id=self.subject_id,
            email=self.email,
            display_name=self.name,
            role=self.role,
            created_at=timestamp,
            last_login=timestamp,
        )


DEFAULT_LOCAL_ACCOUNTS: tuple[LocalAccount, ...] = (
    LocalAccount("admin@bvg.com", "admin123", "dev-1", "Admin (Dev)", Role.ADMIN),
    LocalAccount("ops@bvg.com", "ops123", "dev-2", "Ops (Dev)", Role.OPS),
    LocalAccount("viewer@bvg.com", "view123", "dev-3", "Viewer (Dev)", Role.READ),
)


class CredentialTable:
    """Check local logins using constant-time password comparisons."""

    def __init__(self, accounts: Iterable[LocalAccount] = DEFAULT_LOCAL_ACCOUNTS) -> None:
        self._accounts: Dict[str, LocalAccount] = {account.email: account for account in accounts}

    def authenticate(self, email: str, password: str) -> Optional[Identity]:
        account = self._accounts.get(email.strip().lower())
        if account is None:
            return None
        if not secrets.compare_digest(password.encode("utf-8"), account.password.encode("utf-8")):
            return None
        return account.to_identity()


__all__ = ["CredentialTable", "DEFAULT_LOCAL_ACCOUNTS", "LocalAccount"]
