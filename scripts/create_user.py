#!/usr/bin/env python3
"""Register a user from the command line.

Usage:
    # Using environment variables:
    AUTHGATE_USERNAME=alice AUTHGATE_PASSWORD='correct horse' AUTHGATE_PHONE=+15551234567 \
        python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --username alice --password 'correct horse' --phone +15551234567

Environment Variables:
    AUTHGATE_USERNAME, AUTHGATE_PASSWORD, AUTHGATE_PHONE: the new user's details
    DATABASE_URL: PostgreSQL connection string (an in-memory store is used if unset)
    FIELD_ENCRYPTION_KEY, TRANSPORT_ENCRYPTION_KEY, JWT_SECRET: as for the service
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


async def create_user(username: str, password: str, phone: str, dry_run: bool = False) -> dict:
    """Register a user through the same path as POST /v1/auth/register.

    Returns:
        dict with user_id, username, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authgate.api.schemas import RegisterRequest
    from authgate.service.errors import ConflictError
    from authgate.service.runtime import get_runtime

    body = RegisterRequest(username=username, password=password, phone=phone)
    runtime = get_runtime()

    existing = runtime.store.get_user_by_username(body.username)
    if existing:
        print(f"User {body.username} already exists (id: {existing.id})")
        return {"user_id": existing.id, "username": body.username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {body.username}")
        return {"user_id": None, "username": body.username, "status": "dry_run"}

    try:
        user = await runtime.auth.register(body.username, body.password, body.phone)
    except ConflictError:
        return {"user_id": None, "username": body.username, "status": "exists"}
    print(f"Created user: {user.username} (id: {user.id})")
    return {"user_id": user.id, "username": user.username, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Register an authgate user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("AUTHGATE_USERNAME"),
        help="Username (or set AUTHGATE_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("AUTHGATE_PASSWORD"),
        help="Password (or set AUTHGATE_PASSWORD env var)",
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("AUTHGATE_PHONE"),
        help="Phone number in E.164 form (or set AUTHGATE_PHONE env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    for name in ("username", "password", "phone"):
        if not getattr(args, name):
            print(f"Error: --{name} or AUTHGATE_{name.upper()} environment variable required")
            return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from pydantic import ValidationError as PydanticValidationError

    try:
        result = asyncio.run(
            create_user(args.username, args.password, args.phone, args.dry_run)
        )
    except PydanticValidationError as exc:
        for err in exc.errors():
            print(f"Error: {err.get('msg')}")
        return 1
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made - username is taken.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
