"""
oralexam/tasks/sweep.py
No-show sweep for expired bookings

The sweep already runs on every listing; this task is for deployments that
want it on a timer as well.
"""
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from oralexam.services.seminar_service import sweep_expired_bookings

logger = logging.getLogger(__name__)


async def run_sweep_once(database_url: str) -> int:
    """Run a single sweep cycle."""
    engine = create_async_engine(database_url)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as db:
        try:
            count = await sweep_expired_bookings(db)
            logger.info(f"Sweep completed: {count} bookings marked no_show")
            return count
        finally:
            await engine.dispose()


async def sweep_loop(database_url: str, interval_seconds: int = 300):
    """
    Background sweep loop.
    Runs every interval_seconds (default 5 minutes).
    """
    logger.info(f"Starting sweep loop with interval {interval_seconds}s")

    while True:
        try:
            await run_sweep_once(database_url)
        except Exception as e:
            logger.error(f"Sweep loop error: {type(e).__name__}: {str(e)}")

        await asyncio.sleep(interval_seconds)


def start_sweep_task(database_url: str, interval_seconds: int = 300):
    """Start the sweep loop as a background coroutine."""
    return asyncio.create_task(sweep_loop(database_url, interval_seconds))


if __name__ == "__main__":
    from oralexam.config.settings import settings

    logging.basicConfig(level=logging.INFO)

    asyncio.run(run_sweep_once(settings.DATABASE_URL))
