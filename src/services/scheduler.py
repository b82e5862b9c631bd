"""Scheduled correlation runs using APScheduler."""
from __future__ import annotations

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.services.correlation import CorrelationEngine
from src.services.marketplace import MarketplaceClient
from src.db.engine import async_session
from src.errors import AlreadyRunning
from config.settings import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_correlation():
    """Correlate the latest marketplace orders against the click ledger."""
    logger.info("Scheduled correlation starting...")
    try:
        async with async_session() as session:
            engine = CorrelationEngine(session, MarketplaceClient())
            run = await engine.run(settings.MARKETPLACE_SELLER_ID)
        logger.info(
            "Scheduled correlation complete: %d orders, %d correlated, %d orphans",
            run.orders_processed, run.clicks_correlated, run.orphans_created,
        )
    except AlreadyRunning:
        logger.info("Scheduled correlation skipped — another run holds the lease")
    except Exception:
        logger.exception("Scheduled correlation failed")


def scheduler_enabled() -> bool:
    return settings.CORRELATION_INTERVAL_HOURS > 0 and bool(settings.MARKETPLACE_SELLER_ID)


def start_scheduler(interval_hours: int | None = None):
    """Start the background scheduler for periodic correlation."""
    interval_hours = interval_hours or settings.CORRELATION_INTERVAL_HOURS
    scheduler.add_job(
        scheduled_correlation,
        trigger=IntervalTrigger(hours=interval_hours),
        id="periodic_correlation",
        name="Periodic click → order correlation",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduler started — correlating every %sh", interval_hours)


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
