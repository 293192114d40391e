"""ARQ worker tasks for subscription renewals.

Tasks include:
- renew_subscriptions: Daily sweep that opens pending renewal checkouts for
  lapsed, auto-renewing subscriptions

Usage:
    Start worker with: arq reconciler.workers.renewal_tasks.WorkerSettings
"""

import logging

from arq import cron

from reconciler.core.arq_config import RENEWAL_QUEUE_NAME, get_redis_settings
from reconciler.core.database import get_session_factory
from reconciler.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


async def renew_subscriptions(ctx: dict) -> dict:
    """Run the renewal sweep.

    Args:
        ctx: ARQ context

    Returns:
        Dict with sweep results
    """
    session_factory = get_session_factory()

    async with session_factory() as db:
        report = await SubscriptionService(db).renew_due_subscriptions()

    if report.errors:
        logger.error(f"Renewal sweep finished with {len(report.errors)} failure(s)")

    return {
        "status": "completed",
        "processed": report.processed,
        "renewed": len(report.renewed),
        "skipped": len(report.skipped),
        "errors": report.errors,
    }


class WorkerSettings:
    """ARQ Worker configuration.

    Usage: arq reconciler.workers.renewal_tasks.WorkerSettings
    """

    redis_settings = get_redis_settings()
    queue_name = RENEWAL_QUEUE_NAME

    max_jobs = 1
    job_timeout = 600  # 10 minutes
    max_tries = 1  # A missed day is picked up by the next sweep

    functions = [renew_subscriptions]

    # Daily at 00:05 UTC
    cron_jobs = [
        cron(renew_subscriptions, hour={0}, minute={5}, run_at_startup=False),
    ]

    @staticmethod
    async def on_startup(ctx: dict) -> None:
        """Called when worker starts."""
        logger.info("Renewal worker starting up...")

    @staticmethod
    async def on_shutdown(ctx: dict) -> None:
        """Called when worker shuts down."""
        logger.info("Renewal worker shutdown complete")
