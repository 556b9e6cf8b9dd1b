#!/usr/bin/env python3
"""Bootstrap an administrator principal for initial setup.

The principal is granted the ``admin`` role, which carries every permission
the management endpoints check.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePass123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePass123 --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password for the admin principal (8-100 chars, upper, lower and digit)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_SECRET: Signing key; required so the service configuration validates
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

ADMIN_ROLE = "admin"


def password_problem(password: str) -> str | None:
    """Return why ``password`` is rejected by the registration policy, or None."""
    from warden.api.schemas import _validate_password_strength

    try:
        _validate_password_strength(password)
    except ValueError as exc:
        return str(exc)
    return None


async def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create the principal if needed and make sure it holds the admin role.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from warden.service.access import MANAGEMENT_PERMISSIONS
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        roles = await runtime.access.list_user_roles(existing_user.id)
        if any(role.name == ADMIN_ROLE for role in roles):
            print(f"User {email} already holds the {ADMIN_ROLE} role (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant {ADMIN_ROLE} to existing user {email}")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        role = await runtime.access.ensure_role_with_permissions(ADMIN_ROLE, MANAGEMENT_PERMISSIONS)
        await runtime.access.assign_role(existing_user.id, role.id)
        print(f"Granted {ADMIN_ROLE} to existing user {email} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, name)
    # Registration signs the principal in; this script has no device to hand the session to
    await runtime.auth.logout(result.tokens.refresh_token)
    role = await runtime.access.ensure_role_with_permissions(ADMIN_ROLE, MANAGEMENT_PERMISSIONS)
    await runtime.access.assign_role(result.user.id, role.id)

    print(f"Created admin user: {email} (id: {result.user.id})")
    return {"user_id": result.user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal for Warden",
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
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name for a newly created principal",
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

    problem = password_problem(args.password)
    if problem:
        print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set (at least 32 characters)")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email.strip().lower(), args.password, args.name, args.dry_run)
        )

        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user granted the admin role!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
