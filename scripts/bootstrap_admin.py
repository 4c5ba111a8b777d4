#!/usr/bin/env python3
"""Create the first admin principal, or promote an existing one.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Password1' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Password1'

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password for the admin principal (must satisfy the password policy)
    STORAGE_BACKEND / DATABASE_URL: where to write; defaults to the memory store
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin principal.

    Returns:
        dict with principal_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from sessionward.service.rbac import ROLE_ADMIN, has_role
    from sessionward.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store

    if store.get_role_by_name(ROLE_ADMIN) is None and not dry_run:
        store.create_role(ROLE_ADMIN, ["*"])
        print(f"Created role '{ROLE_ADMIN}'")

    existing = store.get_principal_by_email(email)
    if existing:
        if has_role(existing, ROLE_ADMIN):
            print(f"Principal {email} is already an admin (id: {existing.id})")
            return {"principal_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing principal {email} to admin")
            return {"principal_id": existing.id, "email": email, "status": "dry_run"}

        store.update_principal(existing.id, roles=[*existing.roles, ROLE_ADMIN])
        print(f"Promoted existing principal {email} to admin (id: {existing.id})")
        return {"principal_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin principal: {email}")
        return {"principal_id": None, "email": email, "status": "dry_run"}

    result = await runtime.sessions.register(email, password)
    principal = store.update_principal(
        result.principal.id,
        roles=[*result.principal.roles, ROLE_ADMIN],
        email_verified=True,
    )
    print(f"Created admin principal: {email} (id: {principal.id})")
    return {"principal_id": principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal",
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
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from sessionward.config import get_settings
    from sessionward.service.passwords import PasswordPolicy

    reasons = PasswordPolicy.from_settings(get_settings()).violations(args.password)
    if reasons:
        print("Error: password rejected")
        for reason in reasons:
            print(f"  - {reason}")
        sys.exit(1)

    if os.environ.get("STORAGE_BACKEND", "memory") == "memory":
        print("Note: Using in-memory store (set STORAGE_BACKEND=postgres for persistence)")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin principal created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "promoted":
        print("\nExisting principal promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - principal is already an admin.")


if __name__ == "__main__":
    main()
