#!/usr/bin/env python3
"""Grant the first major admin from the host itself.

Usage:
    python scripts/bootstrap_admin.py --username root

    # Create the account first (contact marked verified, this is a local path):
    python scripts/bootstrap_admin.py --username root --create \
        --email root@example.com --password 'SecurePassword123!'

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PHONE, ADMIN_PASSWORD: defaults for the flags
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    runtime,
    username: str,
    *,
    create: bool = False,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    password: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Grant ``major`` to ``username``, optionally creating the user first.

    Returns:
        dict with user_id, username and status
    """
    from keyward.service.errors import AdminAlreadyExistsError
    from keyward.storage.models import AdminScale

    user = runtime.store.get_user_by_username(username)
    if user is None:
        if not create:
            return {"user_id": None, "username": username, "status": "user_missing"}
        if dry_run:
            return {"user_id": None, "username": username, "status": "dry_run"}
        user = runtime.store.create_user(
            username,
            runtime.passwords.hash(password),
            email=email,
            phone=phone,
            email_verified=bool(email),
            phone_verified=bool(phone),
        )
    elif dry_run:
        return {"user_id": user.id, "username": username, "status": "dry_run"}

    try:
        grant = runtime.admin.bootstrap(username)
    except AdminAlreadyExistsError:
        existing = runtime.admin.get_grant(user.id)
        return {
            "user_id": user.id,
            "username": username,
            "status": "already_admin",
            "scale": existing.scale.value if existing else None,
        }
    if grant.scale != AdminScale.MAJOR:
        raise RuntimeError("bootstrap produced a non-major grant")
    return {"user_id": user.id, "username": username, "status": "granted"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap the first major admin for Keyward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--create", action="store_true", help="Create the user if missing")
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--phone", default=os.environ.get("ADMIN_PHONE"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)
    if args.create:
        if not (args.email or args.phone):
            print("Error: --create needs --email or --phone")
            sys.exit(1)
        if not args.password or not validate_password(args.password):
            print("Error: Password must be at least 12 characters with 3+ character classes")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from keyward.service.errors import ServiceError
    from keyward.service.runtime import get_runtime
    from keyward.storage.errors import ConstraintViolation

    try:
        result = bootstrap_admin(
            get_runtime(),
            args.username,
            create=args.create,
            email=args.email,
            phone=args.phone,
            password=args.password,
            dry_run=args.dry_run,
        )
    except ServiceError as e:
        print(f"Error: {e.message} ({e.error_code})")
        sys.exit(1)
    except ConstraintViolation as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    status = result["status"]
    if status == "granted":
        print(f"Granted major admin to {result['username']} (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"{result['username']} already holds a {result['scale']} grant; nothing changed")
    elif status == "user_missing":
        print(f"Error: no user named {result['username']}; pass --create to add one")
        sys.exit(1)
    else:
        print(f"[DRY RUN] Would grant major admin to {result['username']}")


if __name__ == "__main__":
    main()
