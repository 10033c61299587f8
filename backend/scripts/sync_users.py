#!/usr/bin/env python3
"""
One-shot account reconciliation from the command line.

Runs the same reconciliation as the scheduler against the configured gateway
and prints a summary, including the temporary passwords of newly created
accounts (they are shown once and never stored).

Usage:
    python scripts/sync_users.py                    # reconcile all users
    python scripts/sync_users.py --dry-run          # show what would change
    python scripts/sync_users.py --delete-orphaned  # also remove stale accounts
    python scripts/sync_users.py --user-id 42       # reconcile one user

Requirements:
    Run from the backend/ directory (or set PYTHONPATH).
"""

import argparse
import asyncio
import sys
from pathlib import Path

# ── Ensure we can import project modules ────────────────────────────
SCRIPT_DIR = Path(__file__).resolve().parent
BACKEND_DIR = SCRIPT_DIR.parent
sys.path.insert(0, str(BACKEND_DIR))

from config import settings  # noqa: E402
from database import AsyncSessionLocal, close_db, init_db  # noqa: E402
from gateway import create_gateway  # noqa: E402
from services.account_sync import (  # noqa: E402
    AccountReconciler,
    ReconciliationResult,
    SyncSetupError,
    UserNotEligibleError,
)
from utils.audit import audit  # noqa: E402
from utils.logging_utils import setup_logging  # noqa: E402


def print_summary(result: ReconciliationResult) -> None:
    title = "Dry run summary" if result.dry_run else "Summary"
    print(f"\n{title}:")
    for key, value in result.counts().items():
        print(f"  {key.capitalize():9} {value}")

    for entry in result.updated:
        print(f"  ~ {entry.username}: {', '.join(entry.fields)}")
    for entry in result.errors:
        print(f"  ! {entry.username} ({entry.operation}): {entry.error}")

    passwords = [c for c in result.created if c.temp_password]
    if passwords:
        print("\nTemporary passwords (send to users):")
        for entry in passwords:
            print(f"  {entry.username}: {entry.temp_password}")


async def run(args) -> int:
    await init_db()
    gateway = create_gateway(settings)
    reconciler = AccountReconciler(
        gateway, AsyncSessionLocal, password_length=settings.TEMP_PASSWORD_LENGTH
    )
    audit.set_actor("cli")
    try:
        if args.user_id is not None:
            result = await reconciler.sync_user(args.user_id, dry_run=args.dry_run)
        else:
            result = await reconciler.reconcile(
                dry_run=args.dry_run, delete_orphaned=args.delete_orphaned
            )
    except (SyncSetupError, UserNotEligibleError) as e:
        print(f"Sync failed: {e}", file=sys.stderr)
        return 1
    finally:
        await gateway.aclose()
        await close_db()

    print_summary(result)
    return 1 if result.errors else 0


def main():
    parser = argparse.ArgumentParser(
        description="Synchronize portal users with the VPN access server",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Report what would change without touching the access server",
    )
    parser.add_argument(
        "--delete-orphaned", action="store_true",
        help="Delete access server accounts that have no eligible portal user",
    )
    parser.add_argument(
        "--user-id", type=int, metavar="ID",
        help="Reconcile a single portal user",
    )
    args = parser.parse_args()

    setup_logging(level=settings.LOG_LEVEL)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
