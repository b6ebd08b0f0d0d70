import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dashboard.database import Database, SQLiteDirectory, resolve_database_path
from dashboard.models import Role
from dashboard.users import UserAdministration


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Provision a dashboard directory user")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Unique email address used to match edge identities")
    parser.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.READ.value,
        help="Permission tier (default: read)",
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to DASHBOARD_DB_PATH or data/directory.sqlite3)",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    db_env = args.db_path or os.getenv("DASHBOARD_DB_PATH")
    database = Database(resolve_database_path(db_env))
    database.initialize()
    administration = UserAdministration(SQLiteDirectory(database))

    try:
        user = asyncio.run(
            administration.create_user(email=args.email, name=args.name, role=Role(args.role))
        )
    except ValueError as exc:  # duplicates, etc.
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user #{user.id}: {user.name} <{user.email}> as {user.role.value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
