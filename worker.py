"""
Worker entrypoint — runs deferred tasks and periodic sweeps.

Blocks on the Redis wake-up list so freshly scheduled tasks run promptly;
the BRPOP timeout doubles as the poll interval for timers that come due on
their own (countdowns, watchdogs) or whose wake-up was lost.

Run with: python worker.py
"""

import asyncio
import logging
import time

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from spendgate.config import settings
from spendgate.middleware.logging_config import configure_logging

logger = logging.getLogger("worker")


async def main():
    """Main worker loop — wake on Redis, drain due tasks, sweep periodically."""
    from spendgate.services.scheduler import TaskRunner, WAKE_KEY
    from spendgate.tasks import build_task_handlers, run_sweeps

    engine = create_async_engine(settings.database_url, echo=False)
    SessionMaker = async_sessionmaker(engine, expire_on_commit=False)

    runner = TaskRunner(SessionMaker, build_task_handlers())
    r = aioredis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Worker started, listening on %s", WAKE_KEY)

    last_sweep = 0.0
    while True:
        try:
            while await runner.run_due():
                pass

            if time.monotonic() - last_sweep >= settings.sweep_interval_seconds:
                async with SessionMaker() as session:
                    swept = await run_sweeps(session)
                    await session.commit()
                if any(swept.values()):
                    logger.info("Sweep: %s", swept)
                last_sweep = time.monotonic()

            try:
                await r.brpop(WAKE_KEY, timeout=settings.scheduler_poll_seconds)
            except aioredis.RedisError as exc:
                logger.warning("Redis unavailable (%s), polling instead", exc)
                await asyncio.sleep(settings.scheduler_poll_seconds)
        except Exception as exc:
            logger.error("Worker loop error: %s", exc, exc_info=True)
            await asyncio.sleep(1)


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
