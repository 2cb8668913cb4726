#!/usr/bin/env python3
"""
Gatekeeper -- operator CLI for the auth core.

Usage:
  python main.py seed-roles
  python main.py create-admin --email admin@example.com
  python main.py create-admin --email admin@example.com --password-stdin < pw.txt
  python main.py purge
  python main.py devices ACCOUNT-ID
  python main.py devices ACCOUNT-ID --revoke-all

Settings come from the environment or .env, exactly as for the API server
(DATABASE_URL, SECRET_KEY, JWT_* ...). Run `seed-roles` once before the first
`create-admin` on a fresh database.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.container import AuthComponents, build_components
from auth.errors import AuthError, BadRequest
from core.config import get_settings


def _read_password(from_stdin: bool) -> str:
    """Read the admin password without echoing it or putting it in shell history."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm password: ")
    if first != second:
        raise BadRequest("Passwords do not match.")
    return first


def cmd_seed_roles(auth: AuthComponents, args: argparse.Namespace) -> int:
    created = auth.roles.ensure_default_roles()
    print(f"  {created} role(s) created, {len(auth.roles.list_roles())} total.")
    return 0


def cmd_create_admin(auth: AuthComponents, args: argparse.Namespace) -> int:
    auth.roles.ensure_default_roles()
    password = _read_password(args.password_stdin)
    account = auth.account_service.create_admin(args.email.strip().lower(), password, args.first_name)
    print(f"  Admin created: {account.id} <{account.email}>")
    return 0


def cmd_purge(auth: AuthComponents, args: argparse.Namespace) -> int:
    ledger, records = auth.sessions.purge_expired()
    print(f"  Purged {ledger} ledger entr(ies) and {records} expired token record(s).")
    return 0


def cmd_devices(auth: AuthComponents, args: argparse.Namespace) -> int:
    if auth.accounts.get_by_id(args.account_id) is None:
        print(f"  [!] No account with id '{args.account_id}'.")
        return 1
    if args.revoke_all:
        revoked = auth.sessions.revoke_all_except_current(args.account_id)
        print(f"  Revoked {revoked} credential(s).")
        return 0
    devices = auth.sessions.list_devices(args.account_id)
    if not devices:
        print("  No active sessions.")
        return 0
    for d in devices:
        info = d.device_info
        label = (info.device_name or info.user_agent or info.device_type.value) if info else "unknown"
        last_used = d.last_used_at.isoformat(timespec="seconds") if d.last_used_at else "-"
        print(f"  {d.id:>6}  {label[:40]:<40}  last used {last_used}  expires {d.expires_at:%Y-%m-%d}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Operator commands for the Gatekeeper auth core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed-roles
  python main.py create-admin --email admin@example.com
  python main.py devices SAD1A2B3C4D5E6F --revoke-all
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    seed = sub.add_parser("seed-roles", help="Create any missing default roles")
    seed.set_defaults(handler=cmd_seed_roles)

    admin = sub.add_parser("create-admin", help="Create a verified System Admin account")
    admin.add_argument("--email", required=True, help="Login email for the new admin")
    admin.add_argument("--first-name", default=None, help="Optional display first name")
    admin.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )
    admin.set_defaults(handler=cmd_create_admin)

    purge = sub.add_parser("purge", help="Delete expired ledger entries and token records now")
    purge.set_defaults(handler=cmd_purge)

    devices = sub.add_parser("devices", help="List or revoke an account's active sessions")
    devices.add_argument("account_id", metavar="ACCOUNT-ID")
    devices.add_argument("--revoke-all", action="store_true", help="Sign the account out everywhere")
    devices.set_defaults(handler=cmd_devices)

    return parser


def main(argv: Optional[list[str]] = None, auth: Optional[AuthComponents] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2

    if auth is None:
        auth = build_components(get_settings())
    try:
        return args.handler(auth, args)
    except AuthError as e:
        print(f"  [!] {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
