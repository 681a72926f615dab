#!/usr/bin/env python3
"""
Subscription Expiry Sweep

Moves non-renewing subscriptions past their end date to expired and
re-projects the affected users' tiers.
Run as a cron job or manually: python -m scripts.expire_subscriptions

Usage:
    python -m scripts.expire_subscriptions
    python -m scripts.expire_subscriptions --as-of 2026-01-01T00:00:00+00:00
"""

import asyncio
import argparse
import logging
from datetime import datetime, timezone

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from billing.domain.reconciliation import get_reconciliation_engine
from billing.infrastructure.db.database import close_db, init_db

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _parse_moment(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


async def expire_subscriptions(as_of: datetime = None) -> dict:
    """
    Run one expiry sweep.
    
    Returns:
        Dict with sweep statistics
    """
    stats = {
        "started_at": datetime.now(timezone.utc).isoformat(),
        "expired": 0,
        "users": 0,
    }
    
    await init_db()
    try:
        expired = await get_reconciliation_engine().expire_lapsed(as_of)
    finally:
        await close_db()
    
    stats["expired"] = len(expired)
    stats["users"] = len({subscription.user_id for subscription in expired})
    stats["completed_at"] = datetime.now(timezone.utc).isoformat()
    
    logger.info(f"Expiry sweep complete: {stats}")
    return stats


async def main():
    parser = argparse.ArgumentParser(description="Expire lapsed subscriptions")
    parser.add_argument(
        "--as-of",
        type=_parse_moment,
        default=None,
        help="Treat this ISO-8601 timestamp as now (default: current time)"
    )
    args = parser.parse_args()
    
    stats = await expire_subscriptions(as_of=args.as_of)
    
    print("\n=== Expiry Sweep Complete ===")
    print(f"Expired: {stats['expired']}")
    print(f"Users resynced: {stats['users']}")


if __name__ == "__main__":
    asyncio.run(main())
