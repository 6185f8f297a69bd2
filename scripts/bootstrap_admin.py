#!/usr/bin/env python3
"""Create or promote the account allowed to run admin session cleanup.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secret123Pass python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password Secret123Pass [--dry-run]

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for a newly created admin
    DATABASE_URL: PostgreSQL connection string (in-memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Ensure ``email`` belongs to an admin.

    Returns a dict with ``user_id``, ``email`` and ``status`` (one of
    ``created``, ``promoted``, ``already_admin`` or ``dry_run``).
    """
    # Deferred so the env defaults set in main() are seen by the settings
    from nexora.service.errors import unwrap
    from nexora.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.is_admin:
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, "admin")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    outcome = unwrap(await runtime.auth.register(email, password, "Administrator"))
    runtime.store.update_user_role(outcome.user.id, "admin")
    return {"user_id": outcome.user.id, "email": outcome.user.email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap a Nexora admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    if not args.email or not args.password:
        print("Error: --email and --password (or ADMIN_EMAIL / ADMIN_PASSWORD) are required")
        return 1

    from nexora.service.credentials import validate_password_strength

    weakness = validate_password_strength(args.password)
    if weakness:
        print(f"Error: {weakness}")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL to write to Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from nexora.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
