#!/usr/bin/env python3
"""
SessionGuard -- operator commands for the authentication service.

Usage:
  python main.py hash-password                 # prompts; prints a bcrypt hash
  python main.py hash-password --rounds 13
  python main.py sessions alice                # list active refresh tokens
  python main.py revoke alice                  # revoke every session of alice
  python main.py purge                         # delete expired refresh tokens

The hash printed by hash-password goes into the USERS environment variable:
  USERS='[{"username": "admin", "password_hash": "$2b$12$...", "role": "admin"}]'

Environment variables:
  DATABASE_URL  Refresh-token database (default sqlite:///sessionguard_auth.db).
                The store commands operate on the same database as the API.
"""

import argparse
import getpass
import sys

from auth.credentials import hash_password
from auth.errors import StoreUnavailable
from auth.store import SqlRefreshStore
from core.config import get_settings


def _cmd_hash_password(args: argparse.Namespace) -> int:
    password = getpass.getpass("Password: ")
    if not password:
        print("  [!] Empty password refused.", file=sys.stderr)
        return 1
    if len(password.encode("utf-8")) > 72:
        print("  [!] bcrypt only uses the first 72 bytes; choose a shorter password.", file=sys.stderr)
        return 1
    if getpass.getpass("Repeat:   ") != password:
        print("  [!] Passwords do not match.", file=sys.stderr)
        return 1
    print(hash_password(password, rounds=args.rounds))
    return 0


def _cmd_sessions(args: argparse.Namespace, store: SqlRefreshStore) -> int:
    records = store.list_active(args.username)
    if not records:
        print(f"  No active sessions for {args.username}.")
        return 0
    for record in records:
        issued = record.issued_at.strftime("%Y-%m-%d %H:%M")
        expires = record.expires_at.strftime("%Y-%m-%d %H:%M")
        print(f"  {record.token_id[:8]}...  issued {issued}  expires {expires}")
    print(f"\n  {len(records)} active session(s).")
    return 0


def _cmd_revoke(args: argparse.Namespace, store: SqlRefreshStore) -> int:
    count = store.revoke_lineage(args.username)
    print(f"  Revoked {count} refresh token(s) for {args.username}.")
    return 0


def _cmd_purge(args: argparse.Namespace, store: SqlRefreshStore) -> int:
    count = store.purge_expired()
    print(f"  Purged {count} expired refresh token(s).")
    return 0


_STORE_COMMANDS = {"sessions": _cmd_sessions, "revoke": _cmd_revoke, "purge": _cmd_purge}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sessionguard",
        description="Operator commands for the SessionGuard authentication service.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    hp = sub.add_parser("hash-password", help="Prompt for a password and print its bcrypt hash.")
    hp.add_argument(
        "--rounds",
        type=int,
        default=12,
        choices=range(4, 32),
        metavar="N",
        help="bcrypt cost factor (default: 12).",
    )

    sessions = sub.add_parser("sessions", help="List active refresh tokens for a user.")
    sessions.add_argument("username")

    revoke = sub.add_parser("revoke", help="Revoke every refresh token of a user.")
    revoke.add_argument("username")

    sub.add_parser("purge", help="Delete expired refresh tokens.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "hash-password":
        return _cmd_hash_password(args)

    try:
        store = SqlRefreshStore(get_settings().database_url)
    except StoreUnavailable as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 2
    try:
        return _STORE_COMMANDS[args.command](args, store)
    except StoreUnavailable as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 2
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
