"""Configuration management for the dashboard identity service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

import yaml

from .credentials import DEFAULT_LOCAL_ACCOUNTS, LocalAccount
from .roles import DEFAULT_RULES, RoleRules
from .session import DEFAULT_LOGIN_DELAY

DEFAULT_HTTP_TIMEOUT = 10.0


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(value: Optional[str], default: float, *, positive: bool = False) -> float:
    if value is None or not value.strip():
        return default
    try:
        number = float(value)
    except ValueError as exc:
        raise ValueError(f"Expected a number, got {value!r}") from exc
    if positive and number <= 0:
        raise ValueError(f"Expected a positive number, got {value!r}")
    if number < 0:
        raise ValueError(f"Expected a non-negative number, got {value!r}")
    return number


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


@dataclass(frozen=True)
class AuthConfig:
    """Role rules and local accounts loaded from the auth YAML file."""

    rules: RoleRules = DEFAULT_RULES
    local_accounts: Tuple[LocalAccount, ...] = DEFAULT_LOCAL_ACCOUNTS

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "AuthConfig":
        roles_raw = data.get("roles")
        if roles_raw is None:
            rules = DEFAULT_RULES
        elif isinstance(roles_raw, Mapping):
            rules = RoleRules.from_dict(roles_raw)
        else:
            raise ValueError("The 'roles' section must be a mapping")

        users_raw = data.get("local_users")
        if users_raw is None:
            accounts = DEFAULT_LOCAL_ACCOUNTS
        elif isinstance(users_raw, list):
            accounts = tuple(LocalAccount.from_dict(item) for item in users_raw)
        else:
            raise ValueError("The 'local_users' section must be a list")

        return AuthConfig(rules=rules, local_accounts=accounts)


def load_auth_config(config_path: Optional[Path]) -> AuthConfig:
    """Load role rules and local accounts from a YAML file, if one is configured."""

    if config_path is None:
        return AuthConfig()
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, Mapping):
        raise ValueError("Auth configuration file must contain a mapping")
    return AuthConfig.from_dict(raw)


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from ``DASHBOARD_*`` environment variables."""

    hostname: str = ""
    disable_edge_auth: bool = False
    edge_base_url: Optional[str] = None
    directory_url: Optional[str] = None
    directory_api_key: Optional[str] = None
    database_path: Optional[str] = None
    session_secret: Optional[str] = None
    session_secure: bool = False
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    login_delay: float = DEFAULT_LOGIN_DELAY
    auth: AuthConfig = field(default_factory=AuthConfig)


def resolve_auth_config_path(env_value: Optional[str]) -> Optional[Path]:
    if not env_value:
        return None
    return Path(env_value).expanduser().resolve(strict=False)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    auth_path = resolve_auth_config_path(_clean(env.get("DASHBOARD_AUTH_CONFIG")))
    return Settings(
        hostname=_clean(env.get("DASHBOARD_HOSTNAME")) or "",
        disable_edge_auth=_env_flag(env.get("DASHBOARD_DISABLE_EDGE_AUTH")),
        edge_base_url=_clean(env.get("DASHBOARD_EDGE_BASE_URL")),
        directory_url=_clean(env.get("DASHBOARD_DIRECTORY_URL")),
        directory_api_key=_clean(env.get("DASHBOARD_DIRECTORY_API_KEY")),
        database_path=_clean(env.get("DASHBOARD_DB_PATH")),
        session_secret=_clean(env.get("DASHBOARD_SESSION_SECRET")),
        session_secure=_env_flag(env.get("DASHBOARD_SESSION_SECURE")),
        http_timeout=_env_float(env.get("DASHBOARD_HTTP_TIMEOUT"), DEFAULT_HTTP_TIMEOUT, positive=True),
        login_delay=_env_float(env.get("DASHBOARD_LOGIN_DELAY"), DEFAULT_LOGIN_DELAY),
        auth=load_auth_config(auth_path),
    )


__all__ = ["AuthConfig", "Settings", "load_auth_config", "load_settings", "resolve_auth_config_path"]
