"""
Scheduled Subscription Check

Run periodically (e.g. hourly from cron) to:
1. Sync active subscriptions whose billing date has passed, so renewals,
   failed charges and processor-side cancellations are picked up.
2. Expire cancelled subscriptions whose paid period has ended and revoke
   the company's access flag.

Usage:
    cd backend
    python scripts/check_subscriptions.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.infrastructure.db.database import close_db
from app.infrastructure.services.subscription_lifecycle_service import (
    get_subscription_lifecycle_service,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def main() -> int:
    """Run one check; the exit code is non-zero when any sync failed."""
    service = get_subscription_lifecycle_service()

    try:
        report = await service.run_scheduled_check()
    finally:
        await close_db()

    print("\n" + "=" * 50)
    print("SUBSCRIPTION CHECK COMPLETE")
    print(f"  Synced:  {report.synced}")
    print(f"  Failed:  {report.failed}")
    print(f"  Expired: {report.expired}")
    print("=" * 50)

    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
