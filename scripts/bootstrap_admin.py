#!/usr/bin/env python3
"""Seed the Admin and Manager roles and an initial admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secret1!' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password 'Secret1!' --security-question "First pet?" --security-answer "Rex"

Environment Variables:
    ADMIN_USERNAME: Login name for the admin user
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must satisfy the password policy)
    SHARED_FS_ROOT: Directory holding the persisted store (defaults to /srv/storekeep)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

SEED_ROLES = ("Admin", "Manager")


async def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    *,
    security_question: Optional[str] = None,
    security_answer: Optional[str] = None,
    two_factor: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the seed roles and the admin user, or grant Admin to an existing user.

    Returns:
        dict with user_id, username and status ('created', 'promoted', 'already_admin', 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from storekeep.service.runtime import get_runtime

    runtime = get_runtime()
    identity = runtime.identity

    for role_name in SEED_ROLES:
        if identity.find_role_by_name(role_name):
            continue
        if dry_run:
            print(f"[DRY RUN] Would create role {role_name}")
            continue
        result, _ = identity.create_role(role_name)
        if not result.succeeded:
            raise RuntimeError("; ".join(result.messages))
        print(f"Created role {role_name}")

    existing = identity.find_by_name(username)
    if existing:
        if "Admin" in identity.get_roles(existing):
            print(f"User {username} is already an admin (id: {existing.id})")
            return {"user_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant Admin to existing user {username}")
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        result = identity.add_to_role(existing, "Admin")
        if not result.succeeded:
            raise RuntimeError("; ".join(result.messages))
        print(f"Granted Admin to existing user {username} (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    result, user = identity.create_user(
        username,
        email,
        password,
        name=username,
        security_question=security_question,
        security_answer=security_answer,
    )
    if not result.succeeded or user is None:
        raise RuntimeError("; ".join(result.messages))
    role_result = identity.add_to_role(user, "Admin")
    if not role_result.succeeded:
        raise RuntimeError("; ".join(role_result.messages))
    if two_factor:
        identity.set_two_factor_enabled(user, True)

    print(f"Created admin user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap roles and an admin user for Storekeep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin login name (or set ADMIN_USERNAME env var)",
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
    parser.add_argument("--security-question", default=None)
    parser.add_argument("--security-answer", default=None)
    parser.add_argument(
        "--two-factor",
        action="store_true",
        help="Require an emailed one-time code at login",
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
    if bool(args.security_question) != bool(args.security_answer):
        print("Error: --security-question and --security-answer go together")
        sys.exit(1)

    # Bootstrapping only touches the store; do not insist on Redis
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.username,
                args.email,
                args.password,
                security_question=args.security_question,
                security_answer=args.security_answer,
                two_factor=args.two_factor,
                dry_run=args.dry_run,
            )
        )
    except RuntimeError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user granted the Admin role!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
