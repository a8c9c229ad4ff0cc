#!/usr/bin/env python3
"""Operator commands for marketplace principals.

Usage:
    # Create the platform super-admin:
    python scripts/manage_principals.py create-super-admin --identifier ops@example.com --password 'S3cure-pass'

    # Clear a lockout left by repeated failed logins:
    python scripts/manage_principals.py unlock --kind restaurant --identifier owner@example.com

    # Reset a password; every refresh token of the principal is revoked:
    python scripts/manage_principals.py reset-password --kind super_admin --identifier ops@example.com

    # Disable or re-enable an account:
    python scripts/manage_principals.py set-active --kind staff --identifier rider@example.com --disable

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    REDIS_URL: revocation store; required unless ALLOW_REDIS_FALLBACK_DEV is set
    PRINCIPAL_PASSWORD: password for create-super-admin and reset-password
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _resolve(auth, kind: str, identifier: str):
    from marketauth.service.errors import NotFoundError

    principal = auth.find_principal(identifier, kind)
    if principal is None:
        raise NotFoundError(f"no {kind} principal with identifier {identifier}")
    return principal


def create_super_admin(auth, identifier: str, password: str, *, dry_run: bool = False) -> dict:
    from marketauth.config import PrincipalKind

    existing = auth.find_principal(identifier, PrincipalKind.SUPER_ADMIN)
    if existing is not None:
        print(f"Super admin {existing.identifier} already exists (id: {existing.id})")
        return {"principal_id": existing.id, "status": "exists"}
    if dry_run:
        print(f"[DRY RUN] Would create super admin: {identifier}")
        return {"principal_id": None, "status": "dry_run"}
    principal = auth.register(PrincipalKind.SUPER_ADMIN, identifier, password)
    print(f"Created super admin: {principal.identifier} (id: {principal.id})")
    return {"principal_id": principal.id, "status": "created"}


def unlock(auth, kind: str, identifier: str) -> dict:
    principal = _resolve(auth, kind, identifier)
    was_locked = auth.lockout.is_locked(principal)
    auth.unlock(kind, principal.id)
    print(
        f"Unlocked {principal.identifier} (failed attempts were {principal.failed_attempts}, "
        f"{'locked' if was_locked else 'not locked'})"
    )
    return {"principal_id": principal.id, "status": "unlocked", "was_locked": was_locked}


async def reset_password(auth, kind: str, identifier: str, password: str) -> dict:
    principal = _resolve(auth, kind, identifier)
    revoked = await auth.reset_password(kind, principal.id, password)
    print(f"Password reset for {principal.identifier}; revoked {revoked} refresh token(s)")
    return {"principal_id": principal.id, "status": "reset", "revoked": revoked}


async def set_active(auth, kind: str, identifier: str, active: bool) -> dict:
    principal = _resolve(auth, kind, identifier)
    auth.set_active(kind, principal.id, active)
    revoked = 0
    if not active:
        revoked = await auth.logout_all(principal.id)
    state = "enabled" if active else "disabled"
    print(f"{principal.identifier} {state}; revoked {revoked} refresh token(s)")
    return {"principal_id": principal.id, "status": state, "revoked": revoked}


def _read_password(args) -> str:
    password = args.password or os.environ.get("PRINCIPAL_PASSWORD")
    if not password:
        password = getpass.getpass("New password: ")
    return password


def build_parser() -> argparse.ArgumentParser:
    from marketauth.config import PrincipalKind

    kinds = [k.value for k in PrincipalKind]
    parser = argparse.ArgumentParser(
        description="Manage marketplace principals",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-super-admin", help="Create the platform super admin")
    create.add_argument("--identifier", required=True)
    create.add_argument("--password", help="Password (or set PRINCIPAL_PASSWORD)")
    create.add_argument("--dry-run", action="store_true")

    unlock_cmd = sub.add_parser("unlock", help="Clear failed attempts and any lock")
    unlock_cmd.add_argument("--kind", choices=kinds, required=True)
    unlock_cmd.add_argument("--identifier", required=True)

    reset = sub.add_parser("reset-password", help="Set a new password and revoke sessions")
    reset.add_argument("--kind", choices=kinds, default=PrincipalKind.SUPER_ADMIN.value)
    reset.add_argument("--identifier", required=True)
    reset.add_argument("--password", help="Password (or set PRINCIPAL_PASSWORD)")

    active = sub.add_parser("set-active", help="Enable or disable an account")
    active.add_argument("--kind", choices=kinds, required=True)
    active.add_argument("--identifier", required=True)
    toggle = active.add_mutually_exclusive_group(required=True)
    toggle.add_argument("--enable", dest="active", action="store_true")
    toggle.add_argument("--disable", dest="active", action="store_false")
    return parser


def _prepare_environment() -> None:
    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        os.environ.setdefault("PERSIST_MEMORY_STORE", "true")
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")


async def _dispatch(args, auth) -> dict:
    if args.command == "create-super-admin":
        return create_super_admin(
            auth, args.identifier, _read_password(args), dry_run=args.dry_run
        )
    if args.command == "unlock":
        return unlock(auth, args.kind, args.identifier)
    if args.command == "reset-password":
        return await reset_password(auth, args.kind, args.identifier, _read_password(args))
    return await set_active(auth, args.kind, args.identifier, args.active)


def main(argv: Optional[Sequence[str]] = None, *, runtime=None) -> int:
    _prepare_environment()
    args = build_parser().parse_args(argv)

    from marketauth.service.errors import ServiceError
    from marketauth.storage.errors import StoreUnavailable

    if runtime is None:
        from marketauth.service.runtime import get_runtime

        runtime = get_runtime()
    try:
        asyncio.run(_dispatch(args, runtime.auth))
    except (ServiceError, StoreUnavailable) as exc:
        print(f"Error: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
