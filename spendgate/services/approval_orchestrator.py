"""
Approval Orchestrator — manual approval and auto-approval countdown.

Every approval entry has one owner (user_id) and lives in one of:

    pending       → approved | rejected | expired
    counting_down → approved | rejected | cancelled | expired

Terminal statuses are never left. All writes go through
`compare_and_set`, so a user tapping "approve" while the countdown fires
resolves to exactly one winner; the loser sees `Conflict` (synchronous
callers) or silently no-ops (`process_auto_approval`).

Approval triggers execution by scheduling `execution.execute_plan` in the
same transaction; nothing downstream runs inline.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.config import settings
from spendgate.database import utcnow
from spendgate.exceptions import (
    ApprovalNotFound,
    Conflict,
    InvalidState,
    PlanNotFound,
    Unauthorized,
)
from spendgate.middleware.metrics import approvals_created_total, approvals_resolved_total
from spendgate.models import ApprovalEntry, ExecutionPlan
from spendgate.schemas.audit_events import (
    ApprovalExpired,
    ApprovalGranted,
    ApprovalRejected,
    ApprovalRequested,
    CountdownCancelled,
    CountdownStarted,
)
from spendgate.services.audit_chain import AuditChain
from spendgate.services.scheduler import TaskScheduler
from spendgate.services.stores import IntentStore, PlanStore
from spendgate.services.transitions import compare_and_set

logger = logging.getLogger(__name__)

AUTO_APPROVAL_TASK = "approvals.process_auto_approval"
EXECUTE_PLAN_TASK = "execution.execute_plan"

OPEN_STATUSES = ("pending", "counting_down")
TERMINAL_STATUSES = frozenset({"approved", "rejected", "expired", "cancelled"})


# ── Pure helpers ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CountdownConfig:
    base_ms: int = 5000
    per_dollar_ms: int = 100
    max_ms: int = 30000

    @classmethod
    def from_settings(cls) -> "CountdownConfig":
        return cls(
            base_ms=settings.countdown_base_ms,
            per_dollar_ms=settings.countdown_per_dollar_ms,
            max_ms=settings.countdown_max_ms,
        )


def countdown_duration(amount_cents: int, config: CountdownConfig | None = None) -> int:
    """Countdown length in ms: base, plus per_dollar*10 for each whole $10, capped."""
    config = config or CountdownConfig()
    dollars = amount_cents / 100
    increments = int(dollars // 10)
    return min(config.max_ms, config.base_ms + increments * config.per_dollar_ms * 10)


def decide_approval_mode(amount_cents: int, auto_approve_max_cents: int | None = None) -> str:
    """Small amounts get a cancellable countdown, everything else waits for the user."""
    limit = settings.auto_approve_max_cents if auto_approve_max_cents is None else auto_approve_max_cents
    return "auto" if amount_cents <= limit else "manual"


def format_cents_to_usd(cents: int) -> str:
    return f"${cents / 100:.2f}"


def build_preview(plan: ExecutionPlan) -> dict:
    """Human-readable summary of a plan, stored on the approval entry."""
    steps_preview = []
    for step in plan.steps or []:
        cost = step.get("estimated_cost") or {}
        steps_preview.append({
            "description": step.get("description", ""),
            "estimated_cost_usd": format_cents_to_usd(cost.get("max_spend_cents", 0)),
            "risk_level": cost.get("risk_level", "low"),
        })
    return {
        "goal_recap": plan.goal_recap,
        "steps_preview": steps_preview,
        "total_max_spend_usd": format_cents_to_usd(plan.total_max_spend_cents or 0),
        "estimated_fees_usd": format_cents_to_usd(plan.total_estimated_fee_cents or 0),
        "expected_outcome": plan.expected_outcome or "Transaction will be executed as planned",
        "warnings": list(plan.warnings or []),
    }


# ── Orchestrator ─────────────────────────────────────────────────────────────

class ApprovalOrchestrator:
    def __init__(
        self,
        session: AsyncSession,
        clock=utcnow,
        countdown: CountdownConfig | None = None,
    ):
        self.session = session
        self.clock = clock
        self.countdown = countdown or CountdownConfig.from_settings()
        self.plans = PlanStore(session)
        self.intents = IntentStore(session)
        self.scheduler = TaskScheduler(session, clock=clock)
        self.audit = AuditChain(session, clock=clock)

    # ── Queries ──

    async def get_approval(self, approval_id: str) -> ApprovalEntry | None:
        result = await self.session.execute(
            select(ApprovalEntry).where(ApprovalEntry.approval_id == approval_id)
        )
        return result.scalar_one_or_none()

    async def get_approval_by_plan(self, plan_id: str) -> ApprovalEntry | None:
        result = await self.session.execute(
            select(ApprovalEntry).where(ApprovalEntry.plan_id == plan_id)
        )
        return result.scalar_one_or_none()

    async def list_pending(self, user_id: str) -> list[ApprovalEntry]:
        result = await self.session.execute(
            select(ApprovalEntry)
            .where(
                ApprovalEntry.user_id == user_id,
                ApprovalEntry.status.in_(OPEN_STATUSES),
            )
            .order_by(ApprovalEntry.created_at.desc())
        )
        return list(result.scalars())

    async def list_history(self, user_id: str, limit: int = 50) -> list[ApprovalEntry]:
        result = await self.session.execute(
            select(ApprovalEntry)
            .where(ApprovalEntry.user_id == user_id)
            .order_by(ApprovalEntry.created_at.desc(), ApprovalEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars())

    async def _get_owned(self, approval_id: str, user_id: str) -> ApprovalEntry:
        entry = await self.get_approval(approval_id)
        if entry is None:
            raise ApprovalNotFound(f"Approval {approval_id} not found")
        if entry.user_id != user_id:
            raise Unauthorized("Not authorized to act on this approval")
        return entry

    # ── Creation ──

    async def create_approval(
        self,
        user_id: str,
        plan_id: str,
        intent_id: str,
        preview: dict | None,
        mode: str,
        countdown_duration_ms: int | None = None,
    ) -> ApprovalEntry:
        """Queue a plan for approval; auto mode also arms the countdown timer."""
        if mode not in ("auto", "manual"):
            raise ValueError(f"Unknown approval mode: {mode}")

        plan = await self.plans.get_plan(plan_id)
        if plan is None:
            raise PlanNotFound(f"Plan {plan_id} not found")
        if await self.get_approval_by_plan(plan_id) is not None:
            raise InvalidState(f"Plan {plan_id} already has an approval entry")

        now = self.clock()
        entry = ApprovalEntry(
            approval_id=f"APR-{uuid4().hex[:12].upper()}",
            user_id=user_id,
            plan_id=plan_id,
            intent_id=intent_id,
            preview=preview if preview is not None else build_preview(plan),
            approval_mode=mode,
            status="pending",
            created_at=now,
            expires_at=now + timedelta(seconds=settings.approval_expiry_seconds),
        )

        if mode == "auto":
            duration = countdown_duration_ms
            if duration is None:
                duration = countdown_duration(plan.total_max_spend_cents or 0, self.countdown)
            if duration < 0:
                raise ValueError("countdown_duration_ms must be non-negative")
            entry.status = "counting_down"
            entry.countdown_started_at = now
            entry.countdown_duration_ms = duration
            entry.auto_approve_at = now + timedelta(milliseconds=duration)

        self.session.add(entry)
        await self.session.flush()

        if entry.auto_approve_at is not None:
            await self.scheduler.schedule(
                entry.auto_approve_at, AUTO_APPROVAL_TASK, {"approval_id": entry.approval_id},
            )

        await self.plans.set_plan_status(plan_id, "awaiting_approval")

        ids = self._ids(entry)
        await self.audit.append(
            user_id,
            ApprovalRequested(
                approval_mode=mode,
                total_max_spend_usd=format_cents_to_usd(plan.total_max_spend_cents or 0),
                expires_at=entry.expires_at.isoformat(),
            ),
            **ids,
        )
        if entry.auto_approve_at is not None:
            await self.audit.append(
                user_id,
                CountdownStarted(
                    countdown_duration_ms=entry.countdown_duration_ms,
                    auto_approve_at=entry.auto_approve_at.isoformat(),
                ),
                **ids,
            )

        approvals_created_total.labels(mode=mode).inc()
        logger.info(
            "Approval %s created for plan %s (%s mode)", entry.approval_id, plan_id, mode,
        )
        return entry

    # ── User actions ──

    async def approve(self, approval_id: str, user_id: str) -> ApprovalEntry:
        entry = await self._get_owned(approval_id, user_id)
        if entry.status not in OPEN_STATUSES:
            raise InvalidState(f"Cannot approve: current status is {entry.status}")
        await self._grant(entry, approved_by="user", expected=OPEN_STATUSES)
        return entry

    async def reject(
        self, approval_id: str, user_id: str, reason: str | None = None,
    ) -> ApprovalEntry:
        entry = await self._get_owned(approval_id, user_id)
        if entry.status not in OPEN_STATUSES:
            raise InvalidState(f"Cannot reject: current status is {entry.status}")

        now = self.clock()
        await self._transition(
            entry, OPEN_STATUSES,
            status="rejected", resolved_at=now, rejection_reason=reason,
        )
        await self._cancel_downstream(entry, "APPROVAL_REJECTED", reason or "Rejected by user")
        await self.audit.append(entry.user_id, ApprovalRejected(reason=reason), **self._ids(entry))

        approvals_resolved_total.labels(status="rejected", approved_by="").inc()
        logger.info("Approval %s rejected", approval_id)
        return entry

    async def cancel_countdown(self, approval_id: str, user_id: str) -> ApprovalEntry:
        entry = await self._get_owned(approval_id, user_id)
        if entry.status != "counting_down":
            raise InvalidState(f"Cannot cancel: no active countdown (status is {entry.status})")

        await self._transition(
            entry, ("counting_down",), status="cancelled", resolved_at=self.clock(),
        )
        await self._cancel_downstream(entry, "COUNTDOWN_CANCELLED", "Countdown cancelled by user")
        await self.audit.append(entry.user_id, CountdownCancelled(), **self._ids(entry))

        approvals_resolved_total.labels(status="cancelled", approved_by="").inc()
        logger.info("Countdown cancelled for approval %s", approval_id)
        return entry

    # ── Timer / sweep entry points ──

    async def process_auto_approval(self, approval_id: str) -> str:
        """Countdown timer fired. Returns the outcome; never raises on a lost race."""
        entry = await self.get_approval(approval_id)
        if entry is None:
            logger.warning("Auto-approval fired for unknown approval %s", approval_id)
            return "missing"

        if entry.status != "counting_down":
            logger.info(
                "Auto-approval for %s skipped, status is %s", approval_id, entry.status,
            )
            return "skipped"

        now = self.clock()
        if entry.auto_approve_at is not None and entry.auto_approve_at > now:
            # Fired early; re-arm at the real deadline
            await self.scheduler.schedule(
                entry.auto_approve_at, AUTO_APPROVAL_TASK, {"approval_id": approval_id},
            )
            return "not_due"

        try:
            if entry.expires_at < now:
                await self._expire(entry, ("counting_down",))
                return "expired"
            await self._grant(entry, approved_by="auto", expected=("counting_down",))
        except Conflict:
            logger.info("Auto-approval for %s lost the race, no-op", approval_id)
            return "conflict"
        return "approved"

    async def sweep_expired(self) -> int:
        """Expire pending entries past their deadline. Safe to run concurrently."""
        now = self.clock()
        result = await self.session.execute(
            select(ApprovalEntry).where(
                ApprovalEntry.status == "pending",
                ApprovalEntry.expires_at < now,
            )
        )
        expired = 0
        for entry in result.scalars().all():
            try:
                await self._expire(entry, ("pending",))
            except Conflict:
                continue
            expired += 1

        if expired:
            logger.info("Expired %d pending approvals", expired)
        return expired

    # ── Internals ──

    @staticmethod
    def _ids(entry: ApprovalEntry) -> dict:
        return {
            "intent_id": entry.intent_id,
            "plan_id": entry.plan_id,
            "approval_id": entry.approval_id,
        }

    async def _transition(self, entry: ApprovalEntry, expected, **values) -> None:
        await compare_and_set(
            self.session, ApprovalEntry, ApprovalEntry.approval_id, entry.approval_id,
            expected, **values,
        )

    async def _grant(self, entry: ApprovalEntry, *, approved_by: str, expected) -> None:
        now = self.clock()
        await self._transition(
            entry, expected, status="approved", approved_by=approved_by, resolved_at=now,
        )
        await self.plans.set_plan_status(entry.plan_id, "approved", approved_at=now)
        await self.intents.set_intent_status(entry.intent_id, "approved")
        await self.audit.append(
            entry.user_id, ApprovalGranted(approved_by=approved_by), **self._ids(entry),
        )
        await self.scheduler.schedule(now, EXECUTE_PLAN_TASK, {"plan_id": entry.plan_id})

        approvals_resolved_total.labels(status="approved", approved_by=approved_by).inc()
        logger.info("Approval %s granted (%s)", entry.approval_id, approved_by)

    async def _expire(self, entry: ApprovalEntry, expected) -> None:
        previous = entry.status
        await self._transition(entry, expected, status="expired", resolved_at=self.clock())
        await self._cancel_downstream(entry, "APPROVAL_EXPIRED", "Approval window expired")
        await self.audit.append(
            entry.user_id, ApprovalExpired(previous_status=previous), **self._ids(entry),
        )
        approvals_resolved_total.labels(status="expired", approved_by="").inc()

    async def _cancel_downstream(self, entry: ApprovalEntry, error_code: str, message: str) -> None:
        await self.plans.set_plan_status(entry.plan_id, "cancelled")
        await self.intents.set_intent_status(
            entry.intent_id, "cancelled", error_code=error_code, error_message=message,
        )
