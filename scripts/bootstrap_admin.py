#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=owner@example.com ADMIN_PASSWORD='Espresso#2024' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email owner@example.com --password 'Espresso#2024' --name "Shop Owner"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_NAME: Display name (letters and spaces)
    ADMIN_PASSWORD: Password for the admin user (same strength rules as registration)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from brewstore.service.passwords import PasswordPolicy
    from brewstore.service.runtime import get_runtime
    from brewstore.service.validation import normalize_email_address, normalize_name

    address = normalize_email_address(email)
    if not address:
        raise ValueError("invalid email address")
    clean_name = normalize_name(name)
    if not clean_name:
        raise ValueError("name must be at least 2 letters and spaces")

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(address)

    if existing_user:
        if existing_user.is_admin:
            print(f"User {address} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": address, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {address} to admin")
            return {"user_id": existing_user.id, "email": address, "status": "dry_run"}
        runtime.store.update_user(existing_user.id, is_admin=True)
        print(f"Promoted existing user {address} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": address, "status": "promoted"}

    if not PasswordPolicy.validate_strength(password):
        raise ValueError(
            "password must be at least 8 characters with upper, lower, number and symbol"
        )

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {address}")
        return {"user_id": None, "email": address, "status": "dry_run"}

    user = runtime.store.create_user(
        clean_name, address, runtime.auth.policy.hash(password), is_admin=True
    )
    print(f"Created admin user: {address} (id: {user.id})")
    return {"user_id": user.id, "email": address, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for brewstore",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Store Admin"),
        help="Admin display name (or set ADMIN_NAME env var)",
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

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
