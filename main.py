#!/usr/bin/env python3
"""
recruit-auth -- operator commands for the authentication service.

Usage:
  python main.py init-db
  python main.py ldap-status
  python main.py set-role anna.muster@sunrise.net administrator

Configuration comes from the same environment variables / .env file as the
API (see core/config.py). DATABASE_URL selects the accounts and audit DB.
"""

import argparse
import logging
from typing import Optional

from audit.store import AuditLog
from auth.directory import DirectoryClient
from auth.models import Role
from auth.store import IdentityStore
from core.config import get_settings

logger = logging.getLogger("recruitauth.cli")


def _init_db(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = IdentityStore(settings.database_url)
    audit = AuditLog(settings.database_url)
    try:
        print(f"  Schema ready at {settings.database_url} ({store.count()} accounts).")
    finally:
        store.close()
        audit.close()
    return 0


def _ldap_status(args: argparse.Namespace) -> int:
    settings = get_settings()
    directory = DirectoryClient(settings.directory_config())
    if not directory.configured:
        print("  Directory: not configured (LDAP_ADMIN_DN / LDAP_ADMIN_PASSWORD unset).")
        return 1
    if directory.is_service_reachable():
        print(f"  Directory: reachable at {settings.ldap_url}.")
        return 0
    print(f"  [!] Directory: unreachable at {settings.ldap_url}.")
    return 1


def _set_role(args: argparse.Namespace) -> int:
    """Administrative role change. The next directory login may overwrite it."""
    settings = get_settings()
    store = IdentityStore(settings.database_url)
    audit = AuditLog(settings.database_url)
    try:
        identity = store.get_by_email(args.email)
        if identity is None:
            print(f"  [!] No account for '{args.email}'.")
            return 1
        role = Role(args.role)
        previous = Role(identity.role)
        store.set_role(identity.id, role)
        audit.record(
            "ROLE_CHANGE",
            "account",
            identity.id,
            None,
            {"email": identity.email, "from": previous.value, "to": role.value, "source": "cli"},
        )
        print(f"  {identity.email}: {previous.value} -> {role.value}")
        if identity.directory_id:
            print("  Note: directory-linked account; the next directory login recomputes the role.")
    finally:
        store.close()
        audit.close()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="recruit-auth",
        description="Operator commands for the recruiting authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py ldap-status
  python main.py set-role anna.muster@sunrise.net administrator
  DATABASE_URL=sqlite:////var/lib/recruit/auth.db python main.py init-db
        """,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    init_db = subparsers.add_parser("init-db", help="Create the accounts and audit tables if missing")
    init_db.set_defaults(handler=_init_db)

    ldap_status = subparsers.add_parser("ldap-status", help="Probe the directory with the service bind")
    ldap_status.set_defaults(handler=_ldap_status)

    set_role = subparsers.add_parser("set-role", help="Change the role of an existing account")
    set_role.add_argument("email", metavar="EMAIL", help="Account email (case-insensitive)")
    set_role.add_argument(
        "role",
        metavar="ROLE",
        choices=[r.value for r in Role],
        help="standard or administrator",
    )
    set_role.set_defaults(handler=_set_role)

    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    return args.handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
