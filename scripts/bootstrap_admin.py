#!/usr/bin/env python3
"""Promote an existing account to ADMIN.

Accounts are only created by federation, so the user signs in once through
Google or Kakao before being promoted. Promotion revokes the account's refresh
tokens; the next sign-in carries the new role.

Usage:
    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com [--dry-run]

Environment Variables:
    ADMIN_EMAIL: Email of the account to promote
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET: Signing secret shared with the API server
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, dry_run: bool = False, runtime=None) -> dict:
    """Promote the account registered under ``email``.

    Returns:
        dict with account_id, email and status ('promoted', 'already_admin',
        'dry_run' or 'not_found')
    """
    # Import here to avoid loading config before env vars are set
    from authcore.service.errors import AuthFailure
    from authcore.service.runtime import get_runtime
    from authcore.storage.models import Role

    runtime = runtime or get_runtime()
    account = runtime.store.get_account_by_email(email)
    if account is None:
        print(f"No account registered with {email}; sign in through a provider first")
        return {"account_id": None, "email": email, "status": "not_found"}

    if account.role == Role.ADMIN:
        print(f"Account {email} is already an admin (id: {account.id})")
        return {"account_id": account.id, "email": email, "status": "already_admin"}

    if dry_run:
        print(f"[DRY RUN] Would promote {email} to admin (id: {account.id})")
        return {"account_id": account.id, "email": email, "status": "dry_run"}

    result = runtime.auth.set_account_role(account.id, Role.ADMIN)
    if isinstance(result, AuthFailure):
        raise RuntimeError(f"promotion failed: {result.kind.value} {result.message}")
    print(f"Promoted {email} to admin (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "promoted"}


def main():
    parser = argparse.ArgumentParser(
        description="Promote an authcore account to admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Account email (or set ADMIN_EMAIL env var)",
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

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: set DATABASE_URL (or USE_MEMORY_STORE=true with SHARED_FS_ROOT)")
        sys.exit(1)

    try:
        result = bootstrap_admin(args.email, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "not_found":
        sys.exit(1)


if __name__ == "__main__":
    main()
