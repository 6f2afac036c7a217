"""GrowthLab Metrics — Scheduler Jobs.

APScheduler daily job that recalculates and stores every calculated metric
of the configured companies at the configured hour.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.config import settings
from app.database import get_session
from app.analyzer.pipeline import calculate_metrics
from app.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


async def daily_recalculation_job():
    """Recalculate stored values for each configured company."""
    logger.info("Scheduled recalculation starting...")
    for company_id in settings.recalculation_company_ids:
        session_gen = get_session()
        session = next(session_gen)
        try:
            results = calculate_metrics(
                session,
                company_id=company_id,
                store_results=True,
            )
            logger.info(
                f"Scheduled recalculation complete: {len(results)} metrics",
                extra={"company_id": company_id},
            )
        except Exception as e:
            logger.error(
                f"Scheduled recalculation failed: {e}",
                extra={"company_id": company_id},
            )
        finally:
            session_gen.close()


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return
    if not settings.recalculation_company_ids:
        logger.info("Scheduler not started: no companies configured")
        return

    scheduler.add_job(
        daily_recalculation_job,
        "cron",
        hour=settings.recalculation_hour,
        minute=0,
        id="daily_recalculation",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started. Daily recalculation at {settings.recalculation_hour}:00 UTC"
    )


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
