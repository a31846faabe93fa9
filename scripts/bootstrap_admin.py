#!/usr/bin/env python3
"""Create the first administrator, or promote an existing account to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Str0ngPassword python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --name "Site Admin"

When no password is supplied it is read from the terminal.

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (memory store if unset)
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, *, name: str = "", dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with identity_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Deferred so the environment is settled before settings load
    from gatekeeper.service.passwords import ensure_password_strength
    from gatekeeper.service.repository import apply_transition
    from gatekeeper.service.runtime import get_runtime
    from gatekeeper.storage.models import Role

    runtime = get_runtime()
    normalized = email.strip().lower()
    existing = runtime.store.load_by_email(normalized)

    if existing is not None:
        if existing.role is Role.ADMIN:
            return {"identity_id": existing.id, "email": normalized, "status": "already_admin"}
        if dry_run:
            return {"identity_id": existing.id, "email": normalized, "status": "dry_run"}
        promoted, _ = apply_transition(
            runtime.store, existing, lambda current: ({"role": Role.ADMIN}, None)
        )
        return {"identity_id": promoted.id, "email": normalized, "status": "promoted"}

    ensure_password_strength(password)
    if dry_run:
        return {"identity_id": None, "email": normalized, "status": "dry_run"}
    identity = runtime.auth.create_identity(normalized, password, name=name, role=Role.ADMIN)
    return {"identity_id": identity.id, "email": normalized, "status": "created"}


def list_admins() -> list[dict]:
    """Return id, email and active flag for every admin account."""
    from gatekeeper.service.runtime import get_runtime
    from gatekeeper.storage.models import Role

    return [
        {"identity_id": identity.id, "email": identity.email, "is_active": identity.is_active}
        for identity in get_runtime().store.list_identities()
        if identity.role is Role.ADMIN
    ]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account for Gatekeeper",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default="", help="Display name for a new account")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--list-admins",
        action="store_true",
        help="List existing admin accounts and exit",
    )
    args = parser.parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    if args.list_admins:
        admins = list_admins()
        if not admins:
            print("No admin accounts found")
        for admin in admins:
            state = "active" if admin["is_active"] else "inactive"
            print(f"{admin['email']} (id: {admin['identity_id']}, {state})")
        return 0

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1

    password = args.password
    if not password:
        password = getpass.getpass("Admin password: ")

    from gatekeeper.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.email, password, name=args.name, dry_run=args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for problem in exc.detail.get("problems", []):
            print(f"  - {problem}")
        return 1

    status = result["status"]
    if status == "created":
        print(f"Created admin {result['email']} (id: {result['identity_id']})")
    elif status == "promoted":
        print(f"Promoted {result['email']} to admin (id: {result['identity_id']})")
    elif status == "already_admin":
        print(f"{result['email']} is already an admin; no changes made")
    else:
        print(f"[DRY RUN] No changes made for {result['email']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
