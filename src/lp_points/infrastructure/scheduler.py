"""Periodic expiry sweep on APScheduler's AsyncIOScheduler.

Started from the FastAPI lifespan when EXPIRY_SWEEP_ENABLED is true. Each run
opens its own session; the Redis lock keeps concurrent workers from sweeping
the same accounts twice.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import settings
from src.lp_common.database import async_session_factory
from src.lp_common.redis_client import get_redis
from src.lp_points.application.expiry_sweep import ExpirySweepService
from src.lp_points.application.schemas import ExpirySweepResponse

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_JOB_ID = "points_expiry_sweep"


async def run_expiry_sweep(
    sweep: ExpirySweepService | None = None,
) -> ExpirySweepResponse | None:
    """Job body. Errors are logged so one bad run does not kill the schedule."""
    sweep = sweep or ExpirySweepService()
    try:
        redis = await get_redis()
        async with async_session_factory() as db:
            return await sweep.run_exclusive(db, redis)
    except Exception:
        logger.exception("Scheduled expiry sweep failed")
        return None


def start_expiry_scheduler(
    scheduler: AsyncIOScheduler | None = None,
    interval_minutes: int | None = None,
) -> AsyncIOScheduler:
    scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
    minutes = interval_minutes or settings.EXPIRY_SWEEP_INTERVAL_MINUTES
    scheduler.add_job(
        run_expiry_sweep,
        "interval",
        minutes=minutes,
        id=EXPIRY_SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Expiry sweep scheduled every %d minutes", minutes)
    return scheduler
