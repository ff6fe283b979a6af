"""Create or promote an admin account for initial setup.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassw0rd sportauth-bootstrap-admin

    sportauth-bootstrap-admin --email admin@example.com --password SecurePassw0rd --username admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must satisfy the password policy)
    ADMIN_USERNAME: Username for a newly created admin (default: admin)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from sportauth.logging import get_logger

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


async def bootstrap_admin(
    email: str, password: str, username: str = "admin", dry_run: bool = False
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so the environment is final before settings are read
    from sportauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role == ADMIN_ROLE:
            return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"account_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.store.update_account(existing.id, role=ADMIN_ROLE)
        logger.info("admin_promoted", account_id=existing.id)
        return {"account_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    outcome = await runtime.auth.register(email, password, username=username)
    runtime.events.publish(outcome.events)
    account = outcome.value.account
    runtime.store.update_account(account.id, role=ADMIN_ROLE)
    logger.info("admin_created", account_id=account.id)
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the Sportification auth service",
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
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Username for a newly created admin",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from sportauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.username, args.dry_run)
        )
    except ServiceError as exc:
        details = exc.detail.get("errors") or []
        print(f"Error: {exc.message}")
        for line in details:
            print(f"  - {line}")
        return 1

    messages = {
        "created": "Admin account created",
        "promoted": "Existing account promoted to admin",
        "already_admin": "No changes needed - account is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['account_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
