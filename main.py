#!/usr/bin/env python3
"""
PNIT security -- operator command line.

Usage:
  python main.py keygen
  python main.py unlock alice@example.com
  python main.py revoke-sessions alice@example.com
  python main.py audit --email alice@example.com --limit 20
  python main.py audit --type failed_login --json

Environment variables:
  MASTER_KEY     Required by every command except keygen (at least 32 chars).
  DATABASE_URL   SQLAlchemy URL of the security database.
"""

import argparse
import json
import logging
import secrets
import sys
from typing import Optional

from auth.audit import AuditEventType, SecurityAuditLog
from auth.sessions import SessionManager
from auth.store import SecurityStore
from auth.validation import normalize_email
from core.config import get_settings
from core.errors import ValidationError

logger = logging.getLogger("pnit.cli")

_CLI_ORIGIN = "127.0.0.1"
_CLI_AGENT = "pnit-cli"


def _open_store() -> SecurityStore:
    return SecurityStore(get_settings().database_url)


def _find_user_id(store: SecurityStore, email: str) -> Optional[int]:
    """Resolve an email to a user id, printing a message when it cannot."""
    try:
        normalized = normalize_email(email)
    except ValidationError as exc:
        print(f"  [!] {exc.message}")
        return None
    user = store.get_user_by_email(normalized)
    if user is None:
        print(f"  [!] No account registered for {normalized}.")
        return None
    return user.id


def cmd_keygen(args: argparse.Namespace) -> int:
    """Print a fresh MASTER_KEY (64 hex characters, 256 bits)."""
    print(secrets.token_hex(32))
    return 0


def cmd_unlock(args: argparse.Namespace) -> int:
    store = _open_store()
    try:
        user_id = _find_user_id(store, args.email)
        if user_id is None:
            return 1
        store.unlock_user(user_id)
        SecurityAuditLog(store).record(
            user_id, AuditEventType.ACCOUNT_UNLOCKED, _CLI_ORIGIN, _CLI_AGENT, True, {"by": "operator"}
        )
        print(f"  Account {args.email} unlocked; failed attempt counter reset.")
        return 0
    finally:
        store.close()


def cmd_revoke_sessions(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = SecurityStore(settings.database_url)
    try:
        user_id = _find_user_id(store, args.email)
        if user_id is None:
            return 1
        manager = SessionManager(
            store,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        )
        count = manager.revoke_all(user_id)
        SecurityAuditLog(store).record(
            user_id, AuditEventType.LOGOUT_ALL, _CLI_ORIGIN, _CLI_AGENT, True, {"by": "operator", "sessions_revoked": count}
        )
        print(f"  Revoked {count} session(s) for {args.email}.")
        return 0
    finally:
        store.close()


def cmd_audit(args: argparse.Namespace) -> int:
    store = _open_store()
    try:
        user_id = None
        if args.email:
            user_id = _find_user_id(store, args.email)
            if user_id is None:
                return 1
        events = store.list_audit_events(user_id=user_id, event_type=args.type, limit=args.limit)
    finally:
        store.close()

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "id": e.id,
                        "user_id": e.user_id,
                        "event_type": e.event_type,
                        "success": e.success,
                        "ip_address": e.ip_address,
                        "user_agent": e.user_agent,
                        "details": e.details,
                        "created_at": e.created_at.isoformat() if e.created_at else None,
                    }
                    for e in events
                ],
                indent=2,
            )
        )
        return 0

    if not events:
        print("  No matching audit events.")
        return 0
    for e in events:
        when = e.created_at.strftime("%Y-%m-%d %H:%M:%S") if e.created_at else "-"
        outcome = "ok  " if e.success else "FAIL"
        print(f"  {when}  {outcome}  {e.event_type:<30} user={e.user_id or '-'}  ip={e.ip_address or '-'}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pnit-security",
        description="Operator tools for the PNIT identity and session security engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py keygen >> .env   # then prefix the line with MASTER_KEY=
  python main.py unlock alice@example.com
  python main.py revoke-sessions alice@example.com
  python main.py audit --type login_account_locked --limit 50
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    keygen = sub.add_parser("keygen", help="Print a new random MASTER_KEY")
    keygen.set_defaults(func=cmd_keygen)

    unlock = sub.add_parser("unlock", help="Clear failed attempts and lockout for an account")
    unlock.add_argument("email", metavar="EMAIL")
    unlock.set_defaults(func=cmd_unlock)

    revoke = sub.add_parser("revoke-sessions", help="Revoke every session of an account")
    revoke.add_argument("email", metavar="EMAIL")
    revoke.set_defaults(func=cmd_revoke_sessions)

    audit = sub.add_parser("audit", help="Print recent security audit events")
    audit.add_argument("--email", metavar="EMAIL", help="Only events for this account")
    audit.add_argument(
        "--type",
        metavar="EVENT",
        choices=[t.value for t in AuditEventType],
        help="Only events of this type (e.g. failed_login)",
    )
    audit.add_argument("--limit", type=int, default=50, metavar="N", help="Maximum events to show (default: 50)")
    audit.add_argument("--json", action="store_true", help="Output structured JSON")
    audit.set_defaults(func=cmd_audit)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
