"""
Called-entry expiry job - Cron entry point.

Cancels parties that were called but not seated within the grace window.
Does nothing unless EXPIRE_READY_ENTRIES=true or --force is given.

Usage:
    # Run via cron every few minutes:
    */5 * * * * cd /app && python -m app.jobs.expire_called_entries

    # With specific restaurant and grace window:
    python -m app.jobs.expire_called_entries --restaurant-id <uuid> --grace-minutes 15

    # Ignore the EXPIRE_READY_ENTRIES switch:
    python -m app.jobs.expire_called_entries --force
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional
from uuid import UUID

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("expire-called-entries")


async def run_expiry_job(
    restaurant_id: Optional[UUID] = None,
    grace_minutes: Optional[int] = None,
    force: bool = False,
) -> dict:
    """
    Main entry point for called-entry expiry.

    Args:
        restaurant_id: Specific restaurant, or None for all
        grace_minutes: Override for the configured grace window
        force: Run even when EXPIRE_READY_ENTRIES is off

    Returns:
        Dict with job results
    """
    from app.config import get_settings
    from app.database import get_session_context
    from app.services.queue_service import QueueService

    if not (force or get_settings().expire_ready_entries):
        logger.info("EXPIRE_READY_ENTRIES is off; nothing to do")
        return {"success": True, "skipped": True, "expired": 0, "entry_ids": []}

    logger.info("Expiring stale called entries...")

    async with get_session_context() as session:
        expired = await QueueService(session).expire_stale_calls(
            restaurant_id=restaurant_id,
            grace_minutes=grace_minutes,
        )

    return {
        "success": True,
        "skipped": False,
        "expired": len(expired),
        "entry_ids": [str(e.id) for e in expired],
    }


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Cancel called queue entries past the grace window"
    )
    parser.add_argument(
        "--restaurant-id",
        type=str,
        default=None,
        help="Specific restaurant UUID (default: all restaurants)",
    )
    parser.add_argument(
        "--grace-minutes",
        type=int,
        default=None,
        help="Grace window in minutes (default: READY_GRACE_MINUTES)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run even if EXPIRE_READY_ENTRIES is disabled",
    )

    args = parser.parse_args()

    restaurant_id = None
    if args.restaurant_id:
        try:
            restaurant_id = UUID(args.restaurant_id)
        except ValueError:
            logger.error("Invalid restaurant ID: %s", args.restaurant_id)
            sys.exit(1)

    result = asyncio.run(
        run_expiry_job(
            restaurant_id=restaurant_id,
            grace_minutes=args.grace_minutes,
            force=args.force,
        )
    )

    logger.info("Job completed: %d entries expired", result["expired"])
    sys.exit(0)


if __name__ == "__main__":
    main()
