"""
Prometheus metrics middleware.

Collects HTTP request metrics (counter + histogram) and exposes application-level
counters for the approval, signing, webhook and scheduler machinery.
"""

import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Approval metrics ─────────────────────────────────────────────────────────

approvals_created_total = Counter(
    "approvals_created_total",
    "Approval entries created",
    ["mode"],
)

approvals_resolved_total = Counter(
    "approvals_resolved_total",
    "Approval entries reaching a terminal status",
    ["status", "approved_by"],
)

# ── Signing / settlement metrics ─────────────────────────────────────────────

signing_transitions_total = Counter(
    "signing_transitions_total",
    "Signing request status transitions",
    ["status"],
)

settlement_confirmation_seconds = Histogram(
    "settlement_confirmation_seconds",
    "Time from settlement submission to confirmation",
    buckets=(0.05, 0.1, 0.15, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Webhook / scheduler metrics ──────────────────────────────────────────────

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Inbound webhook deliveries",
    ["source", "outcome"],
)

scheduled_tasks_total = Counter(
    "scheduled_tasks_total",
    "Deferred tasks executed by the worker",
    ["task_name", "outcome"],
)


def _normalize_path(path: str) -> str:
    """Collapse path parameters to reduce cardinality.

    e.g. /api/approvals/APR-1A2B3C4D/approve → /api/approvals/{id}/approve
    """
    parts = path.strip("/").split("/")
    normalized = []
    for i, part in enumerate(parts):
        if i > 1 and (
            part.startswith("APR-")
            or part.startswith("PLAN-")
            or part.startswith("sign_")
            or part.isdigit()
            or len(part) > 20
        ):
            normalized.append("{id}")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint itself to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        http_requests_total.labels(
            method=method,
            path=path,
            status_code=response.status_code,
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            path=path,
        ).observe(duration)

        return response
