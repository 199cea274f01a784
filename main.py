#!/usr/bin/env python3
"""
MedPortal -- command-line entry point.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload
  python main.py create-admin --email admin@clinic.io --name "Site Admin"
  python main.py unlock --email alice@x.io

Configuration comes from the environment / .env (see core/config.py):
  SECRET_KEY     Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL   Any SQLAlchemy URL. Defaults to SQLite files next to the code.
  BIND_ADDRESS   Default host for `serve` (127.0.0.1).
  BIND_PORT      Default port for `serve` (8000).
"""

import argparse
import getpass
import sys

from auth.audit import AuditLog
from auth.models import AuditEntry, Role
from auth.service import CredentialService
from auth.store import AuthStore
from core.config import get_settings
from core.errors import PortalError
from core.retry import RetryPolicy


def _credential_service() -> CredentialService:
    settings = get_settings()
    store = AuthStore(settings.database_url, RetryPolicy.from_settings(settings))
    return CredentialService(settings, store, AuditLog(store, settings.audit_sink))


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "asgi:app",
        host=args.host or settings.bind_address,
        port=args.port or settings.bind_port,
        reload=args.reload,
    )
    return 0


def _create_admin(args: argparse.Namespace) -> int:
    """Bootstrap an admin account. Admin accounts cannot be self-registered over HTTP."""
    password = getpass.getpass("  Password: ")
    if password != getpass.getpass("  Confirm:  "):
        print("  [!] Passwords do not match.")
        return 1
    service = _credential_service()
    try:
        principal = service.register(args.email, args.name, password, Role.admin, allowed_roles=Role)
    except PortalError as e:
        print(f"  [!] {e.message}{f' ({e.detail})' if e.detail else ''}")
        return 1
    finally:
        service.store.close()
    print(f"  Admin created: {principal.email} (id {principal.id})")
    return 0


def _unlock(args: argparse.Namespace) -> int:
    """Clear a credential lockout from the shell when no admin can log in."""
    service = _credential_service()
    try:
        principal = service.store.get_principal_by_email(args.email.strip().lower())
        if principal is None:
            print(f"  [!] No active account for '{args.email}'.")
            return 1
        service.reset_lockout(principal.id)
        service.audit.append(AuditEntry(action="CREDENTIAL.UNLOCK", subject_id=principal.id, payload={"via": "cli"}))
    finally:
        service.store.close()
    print(f"  Lockout cleared for {principal.email}.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="medportal",
        description="Healthcare portal backend: accounts, sessions, and role-based access.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  python main.py create-admin --email admin@clinic.io --name "Site Admin"
  DEBUG=true python main.py serve
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default=None, help="Bind address (default: BIND_ADDRESS)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: BIND_PORT)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    serve.set_defaults(func=_serve)

    create_admin = sub.add_parser("create-admin", help="Create an admin account (prompts for the password)")
    create_admin.add_argument("--email", required=True)
    create_admin.add_argument("--name", required=True)
    create_admin.set_defaults(func=_create_admin)

    unlock = sub.add_parser("unlock", help="Clear a login lockout for an account")
    unlock.add_argument("--email", required=True)
    unlock.set_defaults(func=_unlock)

    args = parser.parse_args()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
