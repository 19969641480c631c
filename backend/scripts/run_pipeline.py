#!/usr/bin/env python3
"""
Run the newsletter pipeline from the command line (no API server, no Celery).

Usage (from backend/; use the project venv):
  ./.venv/bin/python scripts/run_pipeline.py sync --user-id 1

Common examples:
  # Fetch new newsletters and extract companies, even if data is fresh
  ./.venv/bin/python scripts/run_pipeline.py sync --user-id 1 --force --days-back 7

  # Drain one batch of the pending backlog
  ./.venv/bin/python scripts/run_pipeline.py drain --user-id 1 --batch-size 20

  # Clear a stuck sync lock
  ./.venv/bin/python scripts/run_pipeline.py unlock
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

# Ensure backend package is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)

from sqlalchemy import select

from newsletter_intel.config import settings
from newsletter_intel.database import AsyncSessionLocal, async_engine, init_db
from newsletter_intel.models import User
from newsletter_intel.progress import LoggingProgressPublisher
from newsletter_intel.schemas import BatchOptions, SyncOptions
from newsletter_intel.services.sync_coordinator import build_coordinator


async def _resolve_user_id(args) -> int | None:
    if not args.user_email:
        return args.user_id
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(User.id).where(User.email == args.user_email.strip().lower()))
        user_id = result.scalar_one_or_none()
    if user_id is None:
        print(f"User not found for --user-email: {args.user_email}", file=sys.stderr)
        return None
    print(f"Resolved --user-email to user_id={user_id}")
    return user_id


async def _main(args) -> int:
    await init_db()
    try:
        coordinator = build_coordinator(publisher=LoggingProgressPublisher())

        if args.command == "unlock":
            released = await coordinator.lock.force_release()
            print("Sync lock released" if released else "No sync lock was held")
            return 0

        user_id = await _resolve_user_id(args)
        if not user_id:
            print("ERROR: --user-id (or --user-email) is required", file=sys.stderr)
            return 2

        if args.command == "sync":
            result = await coordinator.run_sync(
                user_id, SyncOptions(force_refresh=args.force, days_back=args.days_back)
            )
            print("Sync done:", result.model_dump_json(indent=2))
            return 0 if result.success else 1

        result = await coordinator.run_batch(
            user_id, BatchOptions(batch_size=args.batch_size, max_processing_time_s=args.max_seconds)
        )
        print("Drain done:", result.model_dump_json(indent=2))
        return 0 if result.success else 1
    finally:
        await async_engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run the newsletter extraction pipeline.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add_user_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--user-id", type=int, default=None, help="User id to run for (required)")
        p.add_argument("--user-email", type=str, default=None, help="Resolve user_id by email")

    p_sync = sub.add_parser("sync", help="Fetch new newsletters and drain the backlog")
    add_user_args(p_sync)
    p_sync.add_argument("--force", action="store_true", help="Run even if the last sync is still fresh")
    p_sync.add_argument(
        "--days-back", type=int, default=settings.default_days_back, help="Fetch window in days (default: 30)"
    )

    p_drain = sub.add_parser("drain", help="Process pending emails without fetching")
    add_user_args(p_drain)
    p_drain.add_argument("--batch-size", type=int, default=20, help="Emails per batch (default: 20)")
    p_drain.add_argument(
        "--max-seconds", type=float, default=50.0, help="Time budget for the batch (default: 50)"
    )

    sub.add_parser("unlock", help="Force-release the sync lock")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return asyncio.run(_main(args))


if __name__ == "__main__":
    raise SystemExit(main())
