#!/usr/bin/env python3
"""Bootstrap the first admin principal.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=ChangeMe123 python scripts/bootstrap_admin.py

    # Or with command line args, creating the tables first:
    python scripts/bootstrap_admin.py --init-schema --username admin --email admin@example.com --password ChangeMe123

Environment Variables:
    ADMIN_USERNAME: Login name for the admin (default: admin)
    ADMIN_EMAIL: Email for the admin
    ADMIN_PASSWORD: Password for the admin (at least PASSWORD_MIN_LENGTH characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def init_schema(database_url: str) -> None:
    """Apply the bundled schema to the target database."""
    from vihara.storage.postgres import PostgresStore

    store = PostgresStore(database_url, min_size=1, max_size=1, verify_schema=False)
    try:
        store.apply_schema()
    finally:
        store.close()
    print("Schema applied")


def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    *,
    full_name: str = "System Administrator",
    dry_run: bool = False,
) -> dict:
    """Create an admin principal unless one with this username or email exists.

    Returns:
        dict with principal_id, username and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from vihara.service.runtime import get_runtime
    from vihara.storage.models import Role

    runtime = get_runtime()

    existing = runtime.store.find_principal(Role.ADMIN, username, active_only=False)
    if existing is None:
        existing = runtime.store.find_principal(Role.ADMIN, email, active_only=False)
    if existing:
        print(f"Admin {existing.login_name} already exists (id: {existing.id})")
        return {"principal_id": existing.id, "username": existing.login_name, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create admin: {username} <{email}>")
        return {"principal_id": None, "username": username, "status": "dry_run"}

    principal = runtime.auth.create_principal(
        Role.ADMIN, username, email, password, display_name=full_name
    )
    print(f"Created admin: {principal.login_name} (id: {principal.id})")
    return {"principal_id": principal.id, "username": principal.login_name, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap the first admin principal",
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
    parser.add_argument("--full-name", default="System Administrator")
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the tables in DATABASE_URL before creating the admin",
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

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    elif args.init_schema and not args.dry_run:
        init_schema(os.environ["DATABASE_URL"])

    from vihara.service.errors import ServiceError

    try:
        result = bootstrap_admin(
            args.username,
            args.email,
            args.password,
            full_name=args.full_name,
            dry_run=args.dry_run,
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1

    if result["status"] == "created":
        print("\nAdmin created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - admin already exists.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
