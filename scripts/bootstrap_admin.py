#!/usr/bin/env python3
"""Create the first FindClass administrator, or promote an existing account.

    python scripts/bootstrap_admin.py --email admin@findclass.nz --password '...'
    ADMIN_EMAIL=admin@findclass.nz ADMIN_PASSWORD='...' python scripts/bootstrap_admin.py

Without DATABASE_URL the in-memory store is used, which only makes sense
together with --dry-run.
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from typing import List, Optional


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default="Administrator", help="name for a new account")
    parser.add_argument("--dry-run", action="store_true", help="report without writing")
    args = parser.parse_args(argv)
    if not args.email or not args.password:
        parser.error("--email/ADMIN_EMAIL and --password/ADMIN_PASSWORD are required")
    return args


def _prepare_env() -> None:
    # Settings must be complete before the runtime is first built
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("DATABASE_URL is not set; using the in-memory store")


def ensure_admin(runtime, email: str, password: str, name: str, *, dry_run: bool = False) -> dict:
    """Return ``{"user_id", "email", "status"}``; status is created, promoted,
    already_admin or dry_run."""
    from findclass.service.auth import normalize_email, validate_password_policy
    from findclass.storage.models import UserRole, UserStatus

    email = normalize_email(email)
    validate_password_policy(password)
    user = runtime.store.get_user_by_email(email)

    if user is not None and user.role == UserRole.ADMIN.value:
        return {"user_id": user.id, "email": email, "status": "already_admin"}
    if dry_run:
        return {"user_id": user.id if user else None, "email": email, "status": "dry_run"}
    if user is not None:
        runtime.store.update_user(user.id, role=UserRole.ADMIN.value, status=UserStatus.ACTIVE.value)
        return {"user_id": user.id, "email": email, "status": "promoted"}

    user = runtime.store.create_user(
        email, name, role=UserRole.ADMIN.value, status=UserStatus.ACTIVE.value
    )
    runtime.auth.save_password(user.id, password)
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    _prepare_env()
    from findclass.service.errors import ServiceError
    from findclass.service.runtime import get_runtime

    try:
        result = ensure_admin(
            get_runtime(), args.email, args.password, args.name, dry_run=args.dry_run
        )
    except ServiceError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
