"""
Prometheus metrics endpoint.

Exposes GET /metrics in Prometheus text exposition format. The scheduler
backlog gauge is refreshed from the database on each scrape.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.api.deps import get_db
from spendgate.models import ScheduledTask

router = APIRouter(tags=["metrics"])

scheduled_tasks_backlog = Gauge(
    "scheduled_tasks_backlog",
    "Deferred tasks not yet finished, by status",
    ["status"],
)


@router.get("/metrics")
async def prometheus_metrics(db: AsyncSession = Depends(get_db)):
    """Expose Prometheus metrics in text format."""
    result = await db.execute(
        select(ScheduledTask.status, func.count(ScheduledTask.id))
        .where(ScheduledTask.status.in_(("pending", "running")))
        .group_by(ScheduledTask.status)
    )
    counts = dict(result.all())
    for status in ("pending", "running"):
        scheduled_tasks_backlog.labels(status=status).set(counts.get(status, 0))

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
