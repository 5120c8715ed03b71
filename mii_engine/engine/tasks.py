"""Celery wiring for the periodic index run.

When CELERY_BROKER_URL is configured, Celery beat fires the periodic full
recomputation every MII_PERIODIC_INTERVAL_SECONDS. When empty (dev/test),
no beat schedule is installed and runs are triggered through the API.

A periodic tick that lands while another run is active is rejected like
any other trigger and recorded as ABORTED; it is never queued.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from mii_engine.config.settings import Settings, get_settings
from mii_engine.db.session import build_engine
from mii_engine.engine.scheduler import Busy, RunScheduler

logger = logging.getLogger(__name__)

PERIODIC_TASK_NAME = "mii.periodic_run"

# ---------------------------------------------------------------------------
# Celery app (lazy init - only created if a broker is configured)
# ---------------------------------------------------------------------------

_celery_app = None


def build_beat_schedule(settings: Settings) -> dict:
    """Beat entries for the current settings; empty without a broker."""
    if not settings.CELERY_BROKER_URL:
        return {}
    return {
        "mii-periodic-run": {
            "task": PERIODIC_TASK_NAME,
            "schedule": float(settings.MII_PERIODIC_INTERVAL_SECONDS),
        },
    }


def get_celery_app():
    """Get or create the Celery application with the periodic task registered."""
    global _celery_app
    if _celery_app is None:
        from celery import Celery

        settings = get_settings()
        broker_url = settings.CELERY_BROKER_URL or settings.REDIS_URL
        _celery_app = Celery(
            "mii_engine",
            broker=broker_url,
            backend=broker_url,
        )
        _celery_app.conf.task_serializer = "json"
        _celery_app.conf.result_serializer = "json"
        _celery_app.conf.beat_schedule = build_beat_schedule(settings)
        _celery_app.task(name=PERIODIC_TASK_NAME)(_celery_periodic_task)
    return _celery_app


# ---------------------------------------------------------------------------
# Periodic run orchestration
# ---------------------------------------------------------------------------


async def run_periodic(scheduler: RunScheduler) -> str:
    """Fire one periodic trigger and return the resulting run status."""
    outcome = await scheduler.run_periodic()
    if isinstance(outcome, Busy):
        logger.info(
            "Periodic run skipped: run %s in progress (recorded as %s)",
            outcome.active_run_id, outcome.aborted_run_id,
        )
        return "ABORTED"
    return outcome.status.value


# ---------------------------------------------------------------------------
# Celery task wrapper
# ---------------------------------------------------------------------------


def _celery_periodic_task() -> str:
    """Celery task that runs the periodic recomputation in a worker process.

    Each invocation gets its own engine, bound to the event loop it runs on.
    """
    settings = get_settings()

    async def _run() -> str:
        engine = build_engine(settings.DATABASE_URL)
        try:
            factory = async_sessionmaker(engine, expire_on_commit=False)
            return await run_periodic(RunScheduler.from_settings(factory, settings))
        finally:
            await engine.dispose()

    return asyncio.run(_run())
