"""Identity resolution and session synchronization for the logistics dashboard."""

from __future__ import annotations

from typing import Any

from .database import Database, resolve_database_path
from .models import AuthMode, Role
from .modes import select_mode
from .roles import resolve_role


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the dashboard identity application."""

    from .web import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "AuthMode",
    "Database",
    "Role",
    "create_app",
    "resolve_database_path",
    "resolve_role",
    "select_mode",
]
