#!/usr/bin/env python3
"""Seed system roles and create (or promote) an administrator.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=root_admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=... python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username root_admin --phone 13800138000 --password ...

Environment Variables:
    ADMIN_USERNAME: Username for the admin credential
    ADMIN_EMAIL / ADMIN_PHONE: Contact for the admin credential (one is required)
    ADMIN_PASSWORD: Password for the admin credential
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
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
    username: str,
    password: str,
    *,
    email: str | None = None,
    phone: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin credential.

    Returns:
        dict with credential_id, username and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so the environment below is in place before settings load
    from idwarden.service.runtime import get_runtime

    runtime = get_runtime()
    admin_role = runtime.settings.admin_role_name
    # system roles are seeded by the runtime; a custom admin role may not be
    if runtime.store.get_role_by_name(admin_role) is None:
        runtime.roles.create(admin_role, "Administrator")

    existing = runtime.store.get_credential_by_username(username.strip())
    if existing:
        if admin_role in runtime.roles.role_names_for(existing.id):
            print(f"User {username} already holds {admin_role} (id: {existing.id})")
            return {"credential_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant {admin_role} to existing user {username}")
            return {"credential_id": existing.id, "username": username, "status": "dry_run"}
        runtime.roles.assign(existing.id, [admin_role])
        print(f"Granted {admin_role} to existing user {username} (id: {existing.id})")
        return {"credential_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username}")
        return {"credential_id": None, "username": username, "status": "dry_run"}

    result = await runtime.auth.register(username, password, email=email, phone=phone)
    runtime.roles.assign(result.credential.id, [admin_role])
    print(f"Created admin user: {username} (id: {result.credential.id})")
    return {
        "credential_id": result.credential.id,
        "username": username,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin credential for idwarden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("ADMIN_PHONE"),
        help="Admin phone (or set ADMIN_PHONE env var)",
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

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not args.email and not args.phone:
        print("Error: --email/--phone or ADMIN_EMAIL/ADMIN_PHONE required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/idwarden-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store persisted under SHARED_FS_ROOT")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from idwarden.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.username,
                args.password,
                email=args.email,
                phone=args.phone,
                dry_run=args.dry_run,
            )
        )
    except (ServiceError, RuntimeError) as e:
        print(f"Error: {getattr(e, 'message', e)}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  Credential ID: {result['credential_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
