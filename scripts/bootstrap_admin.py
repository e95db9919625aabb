#!/usr/bin/env python3
"""Bootstrap an admin account for CollabBoard.

Usage:
    # Using environment variables:
    ADMIN_NAME="Ops" ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --name Ops --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_NAME: Display name for the admin (defaults to "Administrator")
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (8-128 characters)
    STORE_BACKEND / REDIS_URL: Where accounts live (memory store if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def validate_password(password: str) -> bool:
    return MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH


async def bootstrap_admin(name: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin account, or promote the existing account with that email.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from collabboard.service.runtime import get_runtime

    runtime = get_runtime()
    sessions = runtime.sessions
    existing_user = runtime.store.get_user_by_email(email.strip().lower())

    if existing_user:
        if existing_user.is_admin:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        await sessions.set_user_role(existing_user.id, "admin")
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await sessions.create_admin(name, email, password)
    print(f"Created admin user: {email} (id: {result.user.id})")
    return {
        "user_id": result.user.id,
        "email": result.user.email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for CollabBoard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Admin display name (or set ADMIN_NAME env var)",
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
        print(
            f"Error: Password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters"
        )
        sys.exit(1)

    # Token secrets are required at startup; generate throwaway ones if absent
    for var in ("ACCESS_TOKEN_SECRET", "REFRESH_TOKEN_SECRET"):
        if not os.environ.get(var):
            os.environ[var] = secrets.token_urlsafe(48)

    if not os.environ.get("STORE_BACKEND"):
        os.environ["STORE_BACKEND"] = "memory"
        print("Note: Using the file-backed memory store (set STORE_BACKEND=redis for Redis)")

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/collabboard-bootstrap"

    try:
        result = asyncio.run(
            bootstrap_admin(args.name, args.email, args.password, args.dry_run)
        )

        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
