#!/usr/bin/env python3
"""Create the first admin account.

Admin routes require an admin token, so the first admin has to be created
out of band.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin account unless one already exists for ``email``.

    Returns:
        dict with admin_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from idkeeper.service.runtime import get_runtime

    runtime = get_runtime()
    normalized = email.strip().lower()

    existing = runtime.store.get_admin_by_email(normalized)
    if existing:
        print(f"Admin {normalized} already exists (id: {existing.id})")
        return {"admin_id": existing.id, "email": normalized, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create admin: {normalized}")
        return {"admin_id": None, "email": normalized, "status": "dry_run"}

    admin = await runtime.auth.register_admin(normalized, password)
    login = await runtime.auth.login_admin(normalized, password)
    print(f"Created admin: {admin.email} (id: {admin.id})")
    return {
        "admin_id": admin.id,
        "email": admin.email,
        "status": "created",
        "access_token": login.token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for idkeeper",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/idkeeper-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Admin ID: {result['admin_id']}")
        print(f"  Admin Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes needed - admin already exists.")


if __name__ == "__main__":
    main()
