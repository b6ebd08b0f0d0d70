"""Command-line interface for the logistics dashboard identity service."""

from __future__ import annotations
import argparse
import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from dashboard.application import Services, build_services
from dashboard.config import Settings, load_settings
from dashboard.database import Database, resolve_database_path
from dashboard.models import ROLE_DESCRIPTIONS, ROLE_LABELS, STATUS_LABELS, AuthMode
from dashboard.session import AuthSession
from dashboard.storage import JsonFileStore

logger = logging.getLogger("dashboard.main")

KNOWN_COMMANDS = {"serve", "init-db", "users", "activity", "login", "whoami", "logout"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Logistics dashboard identity utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the SQLite user directory")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP identity service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the service")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port for the service (default: 8080)")

    subparsers.add_parser("users", help="List directory users")

    activity_parser = subparsers.add_parser("activity", help="Show recent directory activity")
    activity_parser.add_argument("--user-id", type=int, default=None, help="Only show entries for this user")
    activity_parser.add_argument("--limit", type=int, default=20, help="Number of entries to show")

    login_parser = subparsers.add_parser("login", help="Sign in with a local account")
    login_parser.add_argument("email", help="Local account email")
    subparsers.add_parser("whoami", help="Resolve the identity of the stored session")
    subparsers.add_parser("logout", help="Forget the stored local session")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _client_state_path() -> Path:
    env_value = os.getenv("DASHBOARD_CLIENT_STATE")
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return Path.home() / ".config" / "logistics-dashboard" / "session.json"


def _initialise_database(settings: Settings) -> Database:
    db_path = resolve_database_path(settings.database_path)
    database = Database(db_path)
    database.initialize()
    logger.info("Database initialised at %s", db_path)
    return database


def _serve(settings: Settings, *, host: str, port: int) -> None:
    from dashboard.web import create_app
    import uvicorn

    logger.info("Starting dashboard identity service on http://%s:%s", host, port)
    app = create_app(settings=settings)
    uvicorn.run(app, host=host, port=port, log_level="info", proxy_headers=True)


def _cli_session(services: Services) -> AuthSession:
    # Terminal sessions never carry edge cookies.
    store = JsonFileStore(_client_state_path())
    return AuthSession(
        mode=AuthMode.LOCAL,
        synchronizer=services.synchronizer,
        local_store=store,
        credentials=services.credentials,
        login_delay=0,
    )


async def _list_users(services: Services) -> None:
    users = await services.administration.list_users()
    if not users:
        print("No users are currently registered.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':>4}  {'Name':<24}  {'Email':<32}  {'Role':<14}  {'Status':<8}  Last login")
    print("-" * 110)
    for user in users:
        last_login = user.last_login_at.strftime("%Y-%m-%d %H:%M:%S %Z") if user.last_login_at else "never"
        print(
            f"{user.id:>4}  {user.name:<24}  {user.email:<32}  "
            f"{ROLE_LABELS[user.role]:<14}  {STATUS_LABELS[user.status]:<8}  {last_login}"
        )


async def _show_activity(services: Services, *, user_id: int | None, limit: int) -> None:
    entries = await services.administration.list_activity(user_id=user_id, limit=limit)
    if not entries:
        print("No activity has been recorded.")
        return
    for entry in entries:
        created = entry.created_at.strftime("%Y-%m-%d %H:%M:%S")
        details = ", ".join(f"{key}={value}" for key, value in sorted(entry.details.items()))
        print(f"{created}  {entry.action.value:<16}  {entry.user_email:<32}  {details}")


async def _login(services: Services, email: str) -> int:
    session = _cli_session(services)
    await session.initialize()
    password = getpass.getpass("Password: ")
    if not await session.login(email, password):
        print("Invalid email or password.", file=sys.stderr)
        return 1
    user = session.user
    assert user is not None
    print(f"Signed in as {user.display_name} <{user.email}> ({ROLE_LABELS[user.role]})")
    return 0


async def _whoami(services: Services) -> int:
    session = _cli_session(services)
    snapshot = await session.initialize()
    if snapshot.user is None:
        print("Not signed in.")
        return 1
    print(
        f"{snapshot.user.display_name} <{snapshot.user.email}> "
        f"role={snapshot.user.role.value} mode={snapshot.auth_mode.value}"
    )
    print(f"  {ROLE_DESCRIPTIONS[snapshot.user.role]}")
    return 0


async def _run(services: Services, args: argparse.Namespace) -> int:
    try:
        if args.command == "users":
            await _list_users(services)
        elif args.command == "activity":
            await _show_activity(services, user_id=args.user_id, limit=args.limit)
        elif args.command == "login":
            return await _login(services, args.email)
        elif args.command == "whoami":
            return await _whoami(services)
        elif args.command == "logout":
            _cli_session(services).logout()
            print("Signed out.")
        return 0
    finally:
        await services.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = load_settings()

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
        return 0
    if args.command == "init-db":
        _initialise_database(settings)
        print("Database initialisation complete.")
        return 0

    services = build_services(settings, mode=AuthMode.LOCAL)
    return asyncio.run(_run(services, args))


if __name__ == "__main__":
    raise SystemExit(main())
