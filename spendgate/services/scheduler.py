"""
Durable deferred-task scheduler.

Tasks are rows in `scheduled_tasks`, inserted in the caller's transaction so
a timer exists iff the state change that created it committed. Redis is only
a wake-up channel: after commit a token is pushed onto WAKE_KEY so the
worker's BRPOP returns early; if Redis is down the worker still finds the
task on its next poll.

TaskRunner claims due tasks by compare-and-swap (pending → running), so two
workers never run the same task. A task left in `running` past its lease
(worker crashed mid-run) is reclaimed; handlers are idempotent, so a second
run after a crash is harmless.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spendgate.config import settings
from spendgate.database import utcnow
from spendgate.middleware.metrics import scheduled_tasks_total
from spendgate.middleware.request_context import bind_request_id
from spendgate.models import ScheduledTask

logger = logging.getLogger(__name__)

WAKE_KEY = "spendgate:scheduler:wake"
SESSION_PENDING_KEY = "scheduled_task_ids"

TaskHandler = Callable[[AsyncSession, dict], Awaitable[None]]


async def get_redis() -> aioredis.Redis:
    return aioredis.from_url(settings.redis_url, decode_responses=True)


async def notify_worker() -> None:
    """Best-effort wake-up for the worker loop."""
    try:
        r = await get_redis()
        await r.lpush(WAKE_KEY, "1")
        await r.ltrim(WAKE_KEY, 0, 99)
        await r.aclose()
    except Exception as exc:
        logger.warning("Scheduler wake-up skipped, Redis unavailable: %s", exc)


class TaskScheduler:
    """Inserts deferred tasks inside the current session's transaction."""

    def __init__(self, session: AsyncSession, clock=utcnow):
        self.session = session
        self.clock = clock

    async def schedule(self, run_at: datetime, task_name: str, payload: dict) -> ScheduledTask:
        task = ScheduledTask(
            task_id=f"TASK-{uuid4().hex[:12].upper()}",
            task_name=task_name,
            payload=payload,
            run_at=run_at,
            status="pending",
            attempts=0,
            created_at=self.clock(),
        )
        self.session.add(task)
        await self.session.flush()
        self.session.info.setdefault(SESSION_PENDING_KEY, []).append(task.task_id)
        logger.debug("Scheduled %s %s at %s", task_name, task.task_id, run_at.isoformat())
        return task

    async def schedule_after(self, delay_ms: int, task_name: str, payload: dict) -> ScheduledTask:
        return await self.schedule(
            self.clock() + timedelta(milliseconds=delay_ms), task_name, payload,
        )

    async def schedule_now(self, task_name: str, payload: dict) -> ScheduledTask:
        return await self.schedule(self.clock(), task_name, payload)

    async def list_tasks(
        self,
        task_name: str | None = None,
        status: str | None = None,
    ) -> list[ScheduledTask]:
        query = select(ScheduledTask)
        if task_name:
            query = query.where(ScheduledTask.task_name == task_name)
        if status:
            query = query.where(ScheduledTask.status == status)
        result = await self.session.execute(query.order_by(ScheduledTask.run_at.asc()))
        return list(result.scalars())


async def commit_and_notify(session: AsyncSession) -> None:
    """Commit, then wake the worker if this transaction scheduled anything."""
    await session.commit()
    if session.info.pop(SESSION_PENDING_KEY, None):
        await notify_worker()


class TaskRunner:
    """Claims and runs due tasks, one session (and transaction) per task."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        handlers: dict[str, TaskHandler],
        *,
        clock=utcnow,
        batch_size: int | None = None,
        lease_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.clock = clock
        self.batch_size = batch_size or settings.scheduler_batch_size
        self.lease = timedelta(seconds=lease_seconds or settings.scheduler_lease_seconds)

    def _claimable(self, now: datetime):
        return or_(
            and_(ScheduledTask.status == "pending", ScheduledTask.run_at <= now),
            and_(ScheduledTask.status == "running", ScheduledTask.started_at < now - self.lease),
        )

    async def run_due(self) -> int:
        """Run every task due now. Returns how many this call executed."""
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledTask.task_id)
                .where(self._claimable(now))
                .order_by(ScheduledTask.run_at.asc())
                .limit(self.batch_size)
            )
            due = list(result.scalars())

        ran = 0
        for task_id in due:
            if await self._claim(task_id):
                await self._run(task_id)
                ran += 1
        return ran

    async def _claim(self, task_id: str) -> bool:
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(ScheduledTask)
                .where(ScheduledTask.task_id == task_id, self._claimable(now))
                .values(status="running", started_at=now, attempts=ScheduledTask.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def _run(self, task_id: str) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledTask).where(ScheduledTask.task_id == task_id)
            )
            task = result.scalar_one()
            task_name = task.task_name
            handler = self.handlers.get(task_name)

            with bind_request_id(task_id):
                try:
                    if handler is None:
                        raise LookupError(f"No handler registered for task {task_name}")
                    await handler(session, dict(task.payload or {}))
                    task.status = "done"
                    task.completed_at = self.clock()
                    await commit_and_notify(session)
                    outcome = "done"
                    logger.info("Task %s (%s) done", task_id, task_name)
                except Exception as exc:
                    await session.rollback()
                    logger.exception("Task %s (%s) failed: %s", task_id, task_name, exc)
                    await session.execute(
                        update(ScheduledTask)
                        .where(ScheduledTask.task_id == task_id)
                        .values(status="failed", last_error=str(exc)[:2000], completed_at=self.clock())
                    )
                    await session.commit()
                    outcome = "failed"

        scheduled_tasks_total.labels(task_name=task_name, outcome=outcome).inc()
