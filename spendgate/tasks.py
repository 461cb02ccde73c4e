"""
Deferred task handlers run by the worker.

Each handler receives the task's own session and payload; the runner
commits on return and records failures. Handlers are idempotent: every one
re-reads state and relies on compare-and-swap, so a re-run is a no-op.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.clients import Collaborators
from spendgate.database import utcnow
from spendgate.services.approval_orchestrator import (
    AUTO_APPROVAL_TASK,
    EXECUTE_PLAN_TASK,
    ApprovalOrchestrator,
)
from spendgate.services.scheduler import TaskHandler
from spendgate.services.settlement import SettlementService
from spendgate.services.signing_bridge import (
    SUBMIT_SETTLEMENT_TASK,
    WATCHDOG_TASK,
    SigningBridge,
)

logger = logging.getLogger(__name__)


def build_task_handlers(
    collaborators: Collaborators | None = None,
    clock=utcnow,
) -> dict[str, TaskHandler]:
    async def process_auto_approval(session: AsyncSession, payload: dict) -> None:
        outcome = await ApprovalOrchestrator(session, clock=clock).process_auto_approval(
            payload["approval_id"]
        )
        logger.info("Auto-approval %s: %s", payload["approval_id"], outcome)

    async def execute_plan(session: AsyncSession, payload: dict) -> None:
        bridge = SigningBridge(session, collaborators, clock=clock)
        result = await bridge.execute_approved_plan(payload["plan_id"])
        if result is not None and not result.success:
            logger.warning("Plan %s execution failed: %s", payload["plan_id"], result.error)

    async def submit_signed_transaction(session: AsyncSession, payload: dict) -> None:
        service = SettlementService(session, collaborators, clock=clock)
        await service.submit_signed_transaction(payload["request_id"])

    async def signing_watchdog(session: AsyncSession, payload: dict) -> None:
        await SigningBridge(session, collaborators, clock=clock).watchdog(payload["request_id"])

    return {
        AUTO_APPROVAL_TASK: process_auto_approval,
        EXECUTE_PLAN_TASK: execute_plan,
        SUBMIT_SETTLEMENT_TASK: submit_signed_transaction,
        WATCHDOG_TASK: signing_watchdog,
    }


async def run_sweeps(
    session: AsyncSession,
    collaborators: Collaborators | None = None,
    clock=utcnow,
) -> dict:
    """Periodic safety net for lost timers and work stranded by a dead worker."""
    expired = await ApprovalOrchestrator(session, clock=clock).sweep_expired()
    timed_out = await SigningBridge(session, collaborators, clock=clock).sweep_stale_requests()
    recovered = await SettlementService(session, collaborators, clock=clock).sweep_stuck_submissions()
    return {
        "approvals_expired": expired,
        "signing_timed_out": timed_out,
        "settlements_recovered": recovered,
    }
