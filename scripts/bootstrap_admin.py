#!/usr/bin/env python3
"""Bootstrap an admin user for initial setup.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! \
        --username keeper --apply-schema

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str,
    password: str,
    username: str,
    *,
    apply_schema: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create an admin user or grant the admin role to an existing one.

    Returns:
        dict with user_id, email, and status
    """
    # Import here so env overrides apply before settings load
    from hivelog.config import get_settings
    from hivelog.service.runtime import get_runtime
    from hivelog.storage.postgres import PostgresStore

    settings = get_settings()
    if apply_schema and not settings.use_memory_store:
        # The runtime's store refuses to start without tables, so install them first
        PostgresStore(
            settings.database_url, min_size=1, max_size=1, apply_schema=True
        ).close()
        print("Schema applied.")

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)
    if existing:
        if "admin" in existing.roles:
            print(f"User {email} already has the admin role (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant admin to existing user {email}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.auth.assign_role(existing.id, "admin")
        print(f"Granted admin to existing user {email} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(
        username, email, password, roles=["admin", runtime.settings.default_role]
    )
    tokens = runtime.auth.issue_tokens(user)
    return {
        "user_id": user.id,
        "email": email,
        "status": "created",
        "access_token": tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Hivelog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Create tables and seed roles before bootstrapping (Postgres only)",
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
        sys.exit(1)

    # Printed tokens only need to be valid for this process when secrets are unset
    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
        os.environ["JWT_REFRESH_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                args.username,
                apply_schema=args.apply_schema,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
