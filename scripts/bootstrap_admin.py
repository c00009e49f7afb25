#!/usr/bin/env python3
"""Create the initial super-admin account.

Usage:
    ADMIN_PASSWORD='a long passphrase' python scripts/bootstrap_admin.py --email ops@example.com

    python scripts/bootstrap_admin.py --username root --password 'a long passphrase'

The command is idempotent: when an account with the requested username
already exists it is left untouched.

Environment Variables:
    ADMIN_USERNAME: Username for the admin (default ``admin``)
    ADMIN_EMAIL: Optional email address
    ADMIN_PASSWORD: Password for the admin
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(username: str, email: str | None, password: str) -> dict:
    # Import here so env defaults below apply before settings load
    from idgate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        account, created = await runtime.identity.ensure_default_admin(
            username=username, email=email, password=password
        )
    finally:
        await runtime.close()
    return {
        "user_id": account.id,
        "username": account.username,
        "role": account.role,
        "status": "created" if created else "exists",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the idgate super-admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
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
    args = parser.parse_args()

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if len(args.password) < 8:
        print("Error: password must be at least 8 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.username, args.email, args.password))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Created {result['role']} '{result['username']}' (id: {result['user_id']})")
    else:
        print(f"Account '{result['username']}' already exists (id: {result['user_id']}); no changes made")


if __name__ == "__main__":
    main()
