"""
Periodic housekeeping jobs.

Each job opens its own session, commits its work and then hands the
resulting notifications to the producer. They run on the in-process
scheduler and are also exposed as cron endpoints.
"""
from datetime import timedelta
from typing import Callable, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chainfund.core.config import get_settings
from chainfund.database.database import AsyncSessionLocal
from chainfund.kafka.producer import notification_producer
from chainfund.services import lifecycle
from chainfund.services.donation import DonationService
from chainfund.services.payout import PayoutService

logger = structlog.get_logger(__name__)
settings = get_settings()


async def cleanup_pending_donations() -> Dict[str, int]:
    """Fail donations left pending past the timeout"""
    async with AsyncSessionLocal() as db:
        notifications = await DonationService.expire_stale_pending(
            db, timedelta(minutes=settings.pending_donation_timeout_minutes)
        )
    await notification_producer.notify_all(notifications)
    logger.info("Pending donation cleanup finished", timed_out=len(notifications))
    return {"timed_out": len(notifications)}


async def sweep_campaigns() -> Dict[str, int]:
    async with AsyncSessionLocal() as db:
        counts, notifications = await lifecycle.run_campaign_sweep(db)
    await notification_producer.notify_all(notifications)
    return counts


async def process_payouts() -> Dict[str, int]:
    async with AsyncSessionLocal() as db:
        counts, notifications = await PayoutService.process_approved_payouts(db)
    await notification_producer.notify_all(notifications)
    return counts


async def retry_payouts() -> Dict[str, int]:
    async with AsyncSessionLocal() as db:
        counts, notifications = await PayoutService.retry_failed_payouts(db)
    await notification_producer.notify_all(notifications)
    return counts


async def recover_payouts() -> Dict[str, int]:
    async with AsyncSessionLocal() as db:
        counts, notifications = await PayoutService.recover_stale_processing(db)
    await notification_producer.notify_all(notifications)
    return counts


JOBS: Dict[str, Callable] = {
    "cleanup-pending-donations": cleanup_pending_donations,
    "close-campaigns": sweep_campaigns,
    "process-payouts": process_payouts,
    "retry-payouts": retry_payouts,
    "recover-payouts": recover_payouts,
}


async def _run_job(name: str):
    try:
        await JOBS[name]()
    except Exception as e:
        # A failing sweep must not kill the scheduler; the next run retries
        logger.error("Scheduled job failed", job=name, error=str(e), exc_info=True)


scheduler: Optional[AsyncIOScheduler] = None


def start_scheduler() -> AsyncIOScheduler:
    global scheduler
    scheduler = AsyncIOScheduler(timezone="UTC")
    intervals = {
        "cleanup-pending-donations": settings.donation_sweep_interval_minutes,
        "close-campaigns": settings.campaign_sweep_interval_minutes,
        "process-payouts": settings.payout_sweep_interval_minutes,
        "retry-payouts": settings.payout_sweep_interval_minutes,
        "recover-payouts": settings.payout_sweep_interval_minutes,
    }
    for name, minutes in intervals.items():
        scheduler.add_job(
            _run_job,
            "interval",
            minutes=minutes,
            args=[name],
            id=name,
            max_instances=1,
            coalesce=True,
        )
    scheduler.start()
    logger.info("Housekeeping scheduler started", jobs=list(intervals))
    return scheduler


def stop_scheduler():
    global scheduler
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Housekeeping scheduler stopped")
