#!/usr/bin/env python3
"""
ECVMS account administration CLI.

Usage:
  python main.py hash-password
  python main.py create-admin alice
  python main.py list-users

hash-password prints a bcrypt hash suitable for ADMIN_PASSWORD_HASH,
STAFF_PASSWORD_HASH or an AUTH_USERS_JSON entry, so plaintext never has to
be stored in the environment.

create-admin writes straight to the user directory (AUTH_DB_URL) and is the
out-of-band recovery path when no Admin can log in.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import DirectoryError
from auth.models import Role
from auth.passwords import hash_password, validate_password
from auth.store import UserStore
from core.config import get_settings


def _open_store() -> UserStore:
    settings = get_settings()
    return UserStore(settings.auth_db_url) if settings.auth_db_url else UserStore()


def _read_password(provided: Optional[str]) -> Optional[str]:
    """Prompt twice unless the password was passed on the command line."""
    if provided is not None:
        return provided
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Confirm password: ")
    if first != second:
        print("  [!] Passwords do not match.", file=sys.stderr)
        return None
    return first


def cmd_hash_password(args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    error = validate_password(password)
    if error:
        print(f"  [!] {error}", file=sys.stderr)
        return 1
    print(hash_password(password))
    return 0


def cmd_create_admin(args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    store = _open_store()
    try:
        result = store.create_user(args.username, password, Role.admin, created_by="cli")
    finally:
        store.close()
    if isinstance(result, DirectoryError):
        print(f"  [!] {result.message} ({result.code.value})", file=sys.stderr)
        return 1
    print(f"Created Admin {result.username}.")
    return 0


def cmd_list_users(args: argparse.Namespace) -> int:
    store = _open_store()
    try:
        users = store.list_users()
    finally:
        store.close()
    if not users:
        print("No users.")
        return 0
    for user in users:
        print(f"{user.username:<32} {user.role.value:<6} created {user.created_at} by {user.created_by}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ecvms-admin",
        description="Account administration for the ECVMS user directory.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py hash-password
  ADMIN_PASSWORD_HASH="$(python main.py hash-password)" uvicorn asgi:app
  python main.py create-admin alice
  AUTH_DB_URL=sqlite:///prod.db python main.py list-users
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_hash = sub.add_parser("hash-password", help="Print a bcrypt hash for a password")
    p_hash.add_argument("--password", help="Password to hash (prompted if omitted)")
    p_hash.set_defaults(func=cmd_hash_password)

    p_admin = sub.add_parser("create-admin", help="Create an Admin account directly in the directory")
    p_admin.add_argument("username")
    p_admin.add_argument("--password", help="Initial password (prompted if omitted)")
    p_admin.set_defaults(func=cmd_create_admin)

    p_list = sub.add_parser("list-users", help="List directory accounts in creation order")
    p_list.set_defaults(func=cmd_list_users)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
