#!/usr/bin/env python3
"""Create (or promote) the first portal administrator.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=ChangeMe123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password ChangeMe123

Environment Variables:
    ADMIN_USERNAME: Username for the administrator
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password for the administrator
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    *,
    reset_password: bool = False,
    dry_run: bool = False,
) -> dict:
    """Ensure an active, verified user holding exactly the ADMIN role.

    Returns:
        dict with user_id, username and status ('created', 'promoted' or 'dry_run')
    """
    # imported late so the environment is settled before settings load
    from portal.service.runtime import get_runtime
    from portal.storage.seed import ADMIN_ROLE

    runtime = get_runtime()
    store = runtime.store
    admin_role = store.get_role_by_code(ADMIN_ROLE)
    if not admin_role:
        raise RuntimeError(f"role {ADMIN_ROLE} is missing; seed the RBAC catalogue first")

    existing = store.get_user_by_username(username, include_pending=True) or store.get_user_by_email(
        email, include_pending=True
    )
    if dry_run:
        action = "promote existing user" if existing else "create user"
        print(f"[DRY RUN] Would {action} {username} <{email}> with role {ADMIN_ROLE}")
        return {"user_id": existing.id if existing else None, "username": username, "status": "dry_run"}

    if existing:
        user = existing
        status = "promoted"
        if reset_password:
            store.update_password(user.id, runtime.passwords.hash(password))
        if not user.is_email_verified or user.is_pending:
            store.verify_user_email(user.id)
    else:
        user = store.create_user(
            username,
            email,
            runtime.passwords.hash(password),
            tenant_id=runtime.settings.default_tenant_id,
            pending=False,
        )
        store.verify_user_email(user.id)
        status = "created"

    runtime.rbac.assign_roles(user, [admin_role.id])
    print(f"{status.capitalize()} administrator {user.username} (id: {user.id})")
    return {"user_id": user.id, "username": user.username, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first portal administrator",
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
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--reset-password",
        action="store_true",
        help="Overwrite the password when the user already exists",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("MEMORY_STORE_PERSIST", "true")
        print("Note: Using the memory store (set DATABASE_URL to write to PostgreSQL)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from portal.config import get_settings

    if len(args.password) < get_settings().min_password_length:
        print(f"Error: Password must be at least {get_settings().min_password_length} characters")
        sys.exit(1)

    try:
        result = bootstrap_admin(
            args.username,
            args.email.strip().lower(),
            args.password,
            reset_password=args.reset_password,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
    elif result["status"] == "promoted":
        print("\nExisting user now holds the ADMIN role.")


if __name__ == "__main__":
    main()
