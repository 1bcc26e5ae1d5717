#!/usr/bin/env python3
"""Create a verified admin account or promote an existing one.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Password-123' python scripts/make_admin.py

    # Or with command line args:
    python scripts/make_admin.py --email admin@example.com --password 'Secure-Password-123' --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for a new admin user (not needed to promote)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_ACCESS_SECRET / JWT_REFRESH_SECRET: required by the service settings
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 8
# bcrypt input limit
MAX_PASSWORD_BYTES = 72


async def make_admin(
    email: str, password: str | None, name: str | None, dry_run: bool = False
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from keyward.service.codec import hash_password
    from keyward.service.runtime import get_runtime
    from keyward.storage.models import ROLE_ADMIN, User

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == ROLE_ADMIN:
            print(f"User {existing_user.email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {existing_user.email} to admin")
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "dry_run"}
        await runtime.accounts.update_role("make_admin", existing_user.id, ROLE_ADMIN)
        if not existing_user.is_email_verified:
            runtime.store.update_user(existing_user.id, is_email_verified=True)
        print(f"Promoted existing user {existing_user.email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": existing_user.email, "status": "promoted"}

    if not password:
        raise ValueError("--password is required to create a new admin user")
    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        User.new(
            email,
            hash_password(password, rounds=runtime.settings.bcrypt_rounds),
            name=name or email.split("@")[0],
            role=ROLE_ADMIN,
            is_email_verified=True,
        )
    )
    print(f"Created admin user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create or promote a Keyward admin user",
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
        help="Admin password for a new account (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default=None, help="Display name for a new account")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if args.password is not None and (
        len(args.password) < MIN_PASSWORD_LENGTH
        or len(args.password.encode("utf-8")) > MAX_PASSWORD_BYTES
    ):
        print(
            f"Error: Password must be at least {MIN_PASSWORD_LENGTH} characters"
            f" and at most {MAX_PASSWORD_BYTES} bytes"
        )
        sys.exit(1)

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    try:
        result = asyncio.run(make_admin(args.email, args.password, args.name, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        from keyward.service import runtime as runtime_module

        if runtime_module.runtime is not None:
            runtime_module.runtime.close()

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
