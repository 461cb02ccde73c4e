"""
Signing Bridge — drives an approved intent through signing.

Signing request lifecycle:

    pending → awaiting_approval | signing      (record_activity)
    awaiting_approval → signing                (record_activity)
    {pending, awaiting_approval, signing} → signed | failed | rejected
    signed → submitted → confirmed | failed    (settlement.py)

Signer webhooks may be redelivered or arrive out of order, so every
completion is a compare-and-swap from the pre-signed statuses: the first
delivery wins, later ones only refresh the activity log.

A watchdog task armed at creation fails any request still waiting on the
signer after `signing_timeout_seconds`.
"""

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.clients import Collaborators
from spendgate.config import settings
from spendgate.database import utcnow
from spendgate.exceptions import (
    Conflict,
    IntentNotFound,
    InvalidState,
    NoWalletConfigured,
    PolicyViolation,
    SigningRequestNotFound,
    SpendGateError,
)
from spendgate.middleware.metrics import signing_transitions_total
from spendgate.models import ExecutionPlan, SigningActivity, SigningRequest
from spendgate.schemas.audit_events import (
    ExecutionFailed,
    ExecutionStarted,
    PolicyEvaluated,
    SigningActivityRecorded,
    SigningCompleted,
    SigningFailed,
    SigningRejected,
    SigningRequested,
    SigningTimedOut,
)
from spendgate.services.audit_chain import AuditChain
from spendgate.services.policy_gate import PolicyDecision, PolicyLimits, evaluate_policy
from spendgate.services.scheduler import TaskScheduler
from spendgate.services.stores import IntentStore, PlanStore, WalletStore
from spendgate.services.transitions import compare_and_set

logger = logging.getLogger(__name__)

SUBMIT_SETTLEMENT_TASK = "settlement.submit_signed_transaction"
WATCHDOG_TASK = "signing.watchdog"

PRE_SIGNED_STATUSES = ("pending", "awaiting_approval", "signing")
OPEN_REQUEST_STATUSES = ("pending", "awaiting_approval", "signing", "signed", "submitted")

ACTIVITY_COMPLETED = "ACTIVITY_STATUS_COMPLETED"
ACTIVITY_FAILED = "ACTIVITY_STATUS_FAILED"
ACTIVITY_REJECTED = "ACTIVITY_STATUS_REJECTED"
# Signer is waiting on the user (passkey) or on quorum consensus
AWAITING_USER_STATUSES = frozenset({
    "ACTIVITY_STATUS_PENDING",
    "ACTIVITY_STATUS_CONSENSUS_NEEDED",
})

# Statuses a newly recorded activity may advance the request from
ADVANCES_FROM = {
    "awaiting_approval": ("pending",),
    "signing": ("pending", "awaiting_approval"),
}


@dataclass(frozen=True)
class BridgeResult:
    success: bool
    time_ms: int
    error: str | None = None
    request_id: str | None = None


def extract_signature(result: dict | None) -> str | None:
    """Pull the signature out of a signRawPayloadResult (plain or r||s)."""
    payload = (result or {}).get("signRawPayloadResult") or {}
    if payload.get("signature"):
        return payload["signature"]
    if payload.get("r") and payload.get("s"):
        return f"{payload['r']}{payload['s']}"
    return None


class SigningBridge:
    def __init__(
        self,
        session: AsyncSession,
        collaborators: Collaborators | None = None,
        clock=utcnow,
    ):
        self.session = session
        self.clock = clock
        self._collaborators = collaborators
        self.plans = PlanStore(session)
        self.intents = IntentStore(session)
        self.wallets = WalletStore(session)
        self.scheduler = TaskScheduler(session, clock=clock)
        self.audit = AuditChain(session, clock=clock)

    @property
    def collaborators(self) -> Collaborators:
        if self._collaborators is None:
            self._collaborators = Collaborators.from_settings()
        return self._collaborators

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_signing_request(self, request_id: str) -> SigningRequest | None:
        result = await self.session.execute(
            select(SigningRequest).where(SigningRequest.request_id == request_id)
        )
        return result.scalar_one_or_none()

    async def _get_by_activity(self, activity_id: str) -> SigningRequest | None:
        result = await self.session.execute(
            select(SigningRequest).where(SigningRequest.turnkey_activity_id == activity_id)
        )
        request = result.scalar_one_or_none()
        if request is not None:
            return request
        # Activity superseded by a later one on the same request
        result = await self.session.execute(
            select(SigningRequest)
            .join(SigningActivity, SigningActivity.signing_request_id == SigningRequest.id)
            .where(SigningActivity.activity_id == activity_id)
        )
        return result.scalar_one_or_none()

    async def _get_activity(self, activity_id: str) -> SigningActivity | None:
        result = await self.session.execute(
            select(SigningActivity).where(SigningActivity.activity_id == activity_id)
        )
        return result.scalar_one_or_none()

    async def list_pending_requests(self, user_id: str) -> list[SigningRequest]:
        result = await self.session.execute(
            select(SigningRequest)
            .where(
                SigningRequest.user_id == user_id,
                SigningRequest.status.in_(("pending", "awaiting_approval")),
            )
            .order_by(SigningRequest.created_at.desc())
        )
        return list(result.scalars())

    async def get_signing_request_for_approval(self, request_id: str) -> dict | None:
        """Display view used by the client while the user confirms signing."""
        request = await self.get_signing_request(request_id)
        if request is None:
            return None
        intent = await self.intents.get_intent(request.intent_id)
        return {
            "request_id": request.request_id,
            "user_id": request.user_id,
            "status": request.status,
            "wallet_address": request.wallet_address,
            "transaction_message": request.transaction_message,
            "intent": {
                "action": intent.action,
                "amount_cents": intent.amount_cents,
                "currency": intent.currency,
                "destination": intent.destination,
            } if intent else None,
            "created_at": request.created_at,
            "requires_approval": request.status == "awaiting_approval",
        }

    async def bridge_metrics(self, user_id: str) -> dict:
        result = await self.session.execute(
            select(SigningRequest.status, func.count(SigningRequest.id))
            .where(SigningRequest.user_id == user_id)
            .group_by(SigningRequest.status)
        )
        by_status = {status: count for status, count in result.all()}
        total = sum(by_status.values())
        confirmed = by_status.get("confirmed", 0)
        failed = by_status.get("failed", 0) + by_status.get("rejected", 0)
        pending = sum(by_status.get(s, 0) for s in ("pending", "awaiting_approval", "signing", "submitted"))

        avg_result = await self.session.execute(
            select(func.avg(SigningRequest.confirmation_time_ms)).where(
                SigningRequest.user_id == user_id,
                SigningRequest.status == "confirmed",
            )
        )
        avg_ms = avg_result.scalar() or 0

        within_result = await self.session.execute(
            select(func.count(SigningRequest.id)).where(
                SigningRequest.user_id == user_id,
                SigningRequest.status == "confirmed",
                SigningRequest.confirmation_time_ms <= settings.settlement_target_ms,
            )
        )

        return {
            "total_requests": total,
            "confirmed": confirmed,
            "failed": failed,
            "pending": pending,
            "success_rate": round(confirmed / total * 100, 2) if total else 100.0,
            "avg_confirmation_time_ms": round(float(avg_ms)),
            "within_target": within_result.scalar() or 0,
        }

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    async def verify_transaction_policy(
        self,
        user_id: str,
        transaction_type: str,
        amount: int | None = None,
        destination: str | None = None,
    ) -> PolicyDecision:
        wallet = await self.wallets.get_wallet_config(user_id)
        if wallet is None:
            return PolicyDecision(allowed=False, reason="No wallet configured")
        decision = evaluate_policy(
            PolicyLimits.from_wallet(wallet), amount, destination, now=self.clock(),
        )
        logger.debug(
            "Policy for %s %s (%s cents): allowed=%s", user_id, transaction_type, amount, decision.allowed,
        )
        return decision

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def create_signing_request(
        self,
        intent_id: str,
        unsigned_transaction: str,
        transaction_message: str,
    ) -> SigningRequest:
        intent = await self.intents.get_intent(intent_id)
        if intent is None:
            raise IntentNotFound(f"Intent {intent_id} not found")
        wallet = await self.wallets.get_wallet_config(intent.user_id)
        if wallet is None:
            raise NoWalletConfigured(intent.user_id)

        now = self.clock()
        request = SigningRequest(
            request_id=f"sign_{uuid4().hex[:20]}",
            intent_id=intent_id,
            user_id=intent.user_id,
            sub_organization_id=wallet.sub_organization_id,
            wallet_address=wallet.wallet_address,
            unsigned_transaction=unsigned_transaction,
            transaction_message=transaction_message[:1000],
            status="pending",
            created_at=now,
            updated_at=now,
        )
        self.session.add(request)
        await self.session.flush()

        await self.scheduler.schedule(
            now + timedelta(seconds=settings.signing_timeout_seconds),
            WATCHDOG_TASK,
            {"request_id": request.request_id},
        )
        await self.audit.append(
            intent.user_id,
            SigningRequested(
                wallet_address=wallet.wallet_address,
                transaction_message=request.transaction_message,
            ),
            intent_id=intent_id,
            signing_request_id=request.request_id,
        )
        signing_transitions_total.labels(status="pending").inc()
        logger.info("Signing request %s created for intent %s", request.request_id, intent_id)
        return request

    async def record_activity(
        self,
        request_id: str,
        activity_id: str,
        activity_type: str,
        status: str,
    ) -> SigningRequest:
        """Bind a signer activity to a request and move it into the signing phase."""
        request = await self.get_signing_request(request_id)
        if request is None:
            raise SigningRequestNotFound(f"Signing request {request_id} not found")

        existing = await self._get_activity(activity_id)
        if existing is not None:
            if existing.signing_request_id != request.id:
                raise Conflict(
                    "SigningActivity", activity_id,
                    message=f"Activity {activity_id} is bound to another signing request",
                )
            return request

        if request.status not in PRE_SIGNED_STATUSES:
            raise InvalidState(f"Signing request {request_id} is already {request.status}")

        if request.status == "pending":
            intent = await self.intents.get_intent(request.intent_id)
            decision = await self.verify_transaction_policy(
                request.user_id,
                intent.action if intent else "unknown",
                intent.amount_cents if intent else None,
                intent.destination if intent else None,
            )
            if not decision.allowed:
                raise PolicyViolation(decision)

        target = "awaiting_approval" if status in AWAITING_USER_STATUSES else "signing"
        current = request.status
        if current in ADVANCES_FROM[target]:
            expected, new_status = ADVANCES_FROM[target], target
        else:
            # Already at or past the phase this activity reports; rebind only
            expected, new_status = (current,), current

        now = self.clock()
        try:
            await compare_and_set(
                self.session, SigningRequest, SigningRequest.request_id, request_id,
                expected,
                status=new_status, turnkey_activity_id=activity_id, updated_at=now,
            )
        except Conflict:
            await self.session.refresh(request)
            raise InvalidState(f"Signing request {request_id} is already {request.status}")

        self.session.add(SigningActivity(
            signing_request_id=request.id,
            activity_id=activity_id,
            activity_type=activity_type,
            status=status,
            created_at=now,
            updated_at=now,
        ))
        await self.session.flush()

        await self.audit.append(
            request.user_id,
            SigningActivityRecorded(
                activity_id=activity_id,
                activity_type=activity_type,
                activity_status=status,
                request_status=new_status,
            ),
            intent_id=request.intent_id,
            signing_request_id=request_id,
        )
        if new_status != current:
            signing_transitions_total.labels(status=new_status).inc()
        return request

    async def handle_activity_completion(
        self,
        activity_id: str,
        status: str,
        result: dict | None = None,
        error: str | None = None,
    ) -> bool:
        """Apply a signer outcome. Returns False only for an unknown activity."""
        request = await self._get_by_activity(activity_id)
        if request is None:
            logger.warning("No signing request found for activity %s", activity_id)
            return False

        ids = {"intent_id": request.intent_id, "signing_request_id": request.request_id}
        now = self.clock()
        try:
            if status == ACTIVITY_COMPLETED:
                signature = extract_signature(result)
                if signature is None:
                    logger.warning("Activity %s completed without a signature", activity_id)
                else:
                    await self._transition(request, PRE_SIGNED_STATUSES, status="signed", signature=signature)
                    await self.scheduler.schedule(
                        now, SUBMIT_SETTLEMENT_TASK, {"request_id": request.request_id},
                    )
                    await self.audit.append(request.user_id, SigningCompleted(activity_id=activity_id), **ids)

            elif status == ACTIVITY_FAILED:
                message = error or "Signing activity failed"
                await self._transition(request, PRE_SIGNED_STATUSES, status="failed", error=message)
                await self._fail_downstream(request, "SIGNING_FAILED", message)
                await self.audit.append(
                    request.user_id, SigningFailed(activity_id=activity_id, error=message), **ids,
                )

            elif status == ACTIVITY_REJECTED:
                await self._transition(
                    request, PRE_SIGNED_STATUSES, status="rejected", error="User rejected signing request",
                )
                await self.intents.set_intent_status(
                    request.intent_id, "cancelled",
                    error_code="SIGNING_REJECTED", error_message="User rejected signing request",
                )
                plan = await self.plans.get_plan_for_intent(request.intent_id)
                if plan is not None:
                    await self.plans.set_plan_status(plan.plan_id, "cancelled")
                await self.audit.append(request.user_id, SigningRejected(activity_id=activity_id), **ids)

            else:
                logger.info("Activity %s reported intermediate status %s", activity_id, status)
        except Conflict:
            await self.session.refresh(request)
            logger.info(
                "Completion for activity %s ignored, request %s already %s",
                activity_id, request.request_id, request.status,
            )

        activity = await self._get_activity(activity_id)
        if activity is not None:
            activity.status = status
            activity.result = result
            activity.error = error
            activity.updated_at = now
            await self.session.flush()
        return True

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def execute_approved_plan(self, plan_id: str) -> BridgeResult | None:
        """Entry point of the execution task; runs a plan at most once."""
        plan = await self.plans.get_plan(plan_id)
        if plan is None:
            logger.warning("Execution requested for unknown plan %s", plan_id)
            return None
        try:
            await self.plans.set_plan_status(plan_id, "executing", expected={"approved"})
        except Conflict:
            logger.info("Plan %s is %s, not executing", plan_id, plan.status)
            return None
        return await self.execute_intent_via_bridge(plan.intent_id, plan=plan)

    async def execute_intent_via_bridge(
        self, intent_id: str, plan: ExecutionPlan | None = None,
    ) -> BridgeResult:
        """Policy check → build → signing request → signer dispatch. Never raises."""
        started = time.monotonic()
        # Plain values survive the savepoint rollback that expires ORM state
        user_id: str | None = None
        plan_id = plan.plan_id if plan else None
        try:
            intent = await self.intents.get_intent(intent_id)
            if intent is None:
                raise IntentNotFound(f"Intent {intent_id} not found")
            user_id = intent.user_id
            if plan is None:
                plan = await self.plans.get_plan_for_intent(intent_id)
                plan_id = plan.plan_id if plan else None

            decision = await self.verify_transaction_policy(
                user_id, intent.action, intent.amount_cents, intent.destination,
            )
            await self.audit.append(
                user_id,
                PolicyEvaluated(
                    transaction_type=intent.action,
                    amount_cents=intent.amount_cents,
                    allowed=decision.allowed,
                    reason=decision.reason,
                    requires_2fa=decision.requires_2fa,
                    requires_biometric=decision.requires_biometric,
                ),
                intent_id=intent_id,
                plan_id=plan_id,
            )
            if not decision.allowed:
                raise PolicyViolation(decision)

            async with self.session.begin_nested():
                if not await self.intents.set_intent_status(intent_id, "executing"):
                    raise InvalidState(f"Intent {intent_id} is already finished")
                await self.audit.append(
                    user_id,
                    ExecutionStarted(action=intent.action, amount_cents=intent.amount_cents),
                    intent_id=intent_id,
                    plan_id=plan_id,
                )

                built = await self.collaborators.engine.build_transaction(intent, plan)
                request = await self.create_signing_request(
                    intent_id, built.unsigned_transaction, built.transaction_message,
                )
                request_id = request.request_id
                wallet = await self.wallets.get_wallet_config(user_id)
                activity = await self.collaborators.signer.sign_raw_payload(
                    built.unsigned_transaction, wallet,
                )
                await self.record_activity(
                    request_id, activity.activity_id, activity.activity_type, activity.status,
                )
                if activity.status in (ACTIVITY_COMPLETED, ACTIVITY_FAILED, ACTIVITY_REJECTED):
                    await self.handle_activity_completion(
                        activity.activity_id, activity.status, activity.result,
                    )
        except Exception as exc:
            message = exc.message if isinstance(exc, SpendGateError) else str(exc) or type(exc).__name__
            logger.exception("Bridge execution failed for intent %s: %s", intent_id, message)
            elapsed = int((time.monotonic() - started) * 1000)

            await self.intents.set_intent_status(
                intent_id, "failed", error_code="BRIDGE_ERROR", error_message=message,
            )
            if plan_id is not None:
                await self.plans.set_plan_status(plan_id, "failed")
            if user_id is not None:
                await self.audit.append(
                    user_id,
                    ExecutionFailed(error_code="BRIDGE_ERROR", error=message),
                    intent_id=intent_id,
                    plan_id=plan_id,
                )
            return BridgeResult(success=False, time_ms=elapsed, error=message)

        elapsed = int((time.monotonic() - started) * 1000)
        logger.info("Intent %s dispatched for signing in %dms", intent_id, elapsed)
        return BridgeResult(success=True, time_ms=elapsed, request_id=request_id)

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    async def watchdog(self, request_id: str) -> bool:
        """Watchdog timer fired for one request. True if it timed the request out."""
        request = await self.get_signing_request(request_id)
        if request is None or request.status not in PRE_SIGNED_STATUSES:
            return False

        deadline = request.created_at + timedelta(seconds=settings.signing_timeout_seconds)
        if self.clock() < deadline:
            await self.scheduler.schedule(deadline, WATCHDOG_TASK, {"request_id": request_id})
            return False
        return await self._time_out(request)

    async def sweep_stale_requests(self) -> int:
        cutoff = self.clock() - timedelta(seconds=settings.signing_timeout_seconds)
        result = await self.session.execute(
            select(SigningRequest).where(
                SigningRequest.status.in_(PRE_SIGNED_STATUSES),
                SigningRequest.created_at <= cutoff,
            )
        )
        timed_out = 0
        for request in result.scalars().all():
            if await self._time_out(request):
                timed_out += 1
        if timed_out:
            logger.info("Timed out %d stale signing requests", timed_out)
        return timed_out

    async def _time_out(self, request: SigningRequest) -> bool:
        previous = request.status
        message = "Signing request timed out"
        try:
            await self._transition(request, PRE_SIGNED_STATUSES, status="failed", error=message)
        except Conflict:
            return False
        await self._fail_downstream(request, "SIGNING_TIMEOUT", message)
        await self.audit.append(
            request.user_id,
            SigningTimedOut(previous_status=previous, timeout_seconds=settings.signing_timeout_seconds),
            intent_id=request.intent_id,
            signing_request_id=request.request_id,
        )
        logger.warning("Signing request %s timed out in %s", request.request_id, previous)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _transition(self, request: SigningRequest, expected, **values) -> None:
        await compare_and_set(
            self.session, SigningRequest, SigningRequest.request_id, request.request_id,
            expected, updated_at=self.clock(), **values,
        )
        signing_transitions_total.labels(status=values.get("status", "")).inc()

    async def _fail_downstream(self, request: SigningRequest, error_code: str, message: str) -> None:
        await self.intents.set_intent_status(
            request.intent_id, "failed", error_code=error_code, error_message=message,
        )
        plan = await self.plans.get_plan_for_intent(request.intent_id)
        if plan is not None:
            await self.plans.set_plan_status(plan.plan_id, "failed")
