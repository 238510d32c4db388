#!/usr/bin/env python3
"""Create an administrator account, or grant ADMIN to an existing one.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Pass'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (same strength rules as registration)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
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


async def bootstrap_admin(
    email: str, password: str, first_name: str, last_name: str, dry_run: bool = False
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from identitykit.service.auth import normalize_email
    from identitykit.service.runtime import get_runtime
    from identitykit.storage.models import ADMIN_ROLE

    runtime = get_runtime()
    email = normalize_email(email)

    existing = await asyncio.to_thread(runtime.store.get_account_by_email, email)
    if existing:
        if ADMIN_ROLE in existing.roles:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant {ADMIN_ROLE} to existing account {email}")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        await asyncio.to_thread(runtime.store.add_account_role, existing.id, ADMIN_ROLE)
        print(f"Granted {ADMIN_ROLE} to existing account {email} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, first_name, last_name)
    account = result.unwrap()
    await asyncio.to_thread(runtime.store.add_account_role, account.id, ADMIN_ROLE)
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for IdentityKit",
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
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
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

    from identitykit.api.schemas import validate_password_strength

    try:
        validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/identitykit-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from identitykit.service.errors import AuthError

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email, args.password, args.first_name, args.last_name, args.dry_run
            )
        )
    except AuthError as exc:
        print(f"Error: {exc.title}: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
