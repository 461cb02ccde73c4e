"""
Settlement — submit signed transactions and record their outcome.

The submit task claims a request by CAS signed → submitted and commits
before touching the network, so a duplicate task (or a retry after a crash)
can never submit twice. A request a dead worker left in submitted is picked
up by `sweep_stuck_submissions` once `settlement_stale_seconds` pass.

Confirmation arrives either from polling here or from the settlement
webhook; whichever reaches `finalize`/`rollback` first wins the
submitted → confirmed|failed swap.
"""

import base64
import logging
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.clients import Collaborators
from spendgate.config import settings
from spendgate.database import utcnow
from spendgate.exceptions import Conflict, SpendGateError
from spendgate.middleware.metrics import settlement_confirmation_seconds, signing_transitions_total
from spendgate.models import SettlementRecord, SigningRequest
from spendgate.schemas.audit_events import (
    SettlementConfirmed,
    SettlementFailed,
    SettlementSubmitted,
)
from spendgate.services.audit_chain import AuditChain
from spendgate.services.stores import IntentStore, PlanStore
from spendgate.services.transitions import compare_and_set

logger = logging.getLogger(__name__)

CONFIRMED_NOTIFICATIONS = frozenset({"confirmed", "finalized"})
FAILED_NOTIFICATIONS = frozenset({"failed", "dropped", "expired"})


def combine_transaction_with_signature(unsigned_transaction: str, signature_hex: str) -> str:
    """Prefix the wire transaction with a one-entry signature section."""
    tx_bytes = base64.b64decode(unsigned_transaction)
    sig_bytes = bytes.fromhex(signature_hex)
    return base64.b64encode(bytes([1]) + sig_bytes + tx_bytes).decode()


class SettlementService:
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
        self.audit = AuditChain(session, clock=clock)

    @property
    def collaborators(self) -> Collaborators:
        if self._collaborators is None:
            self._collaborators = Collaborators.from_settings()
        return self._collaborators

    async def _get_request(self, request_id: str) -> SigningRequest | None:
        result = await self.session.execute(
            select(SigningRequest).where(SigningRequest.request_id == request_id)
        )
        return result.scalar_one_or_none()

    async def _swap(self, request_id: str, expected, **values) -> None:
        await compare_and_set(
            self.session, SigningRequest, SigningRequest.request_id, request_id,
            expected, updated_at=self.clock(), **values,
        )
        signing_transitions_total.labels(status=values.get("status", "")).inc()

    async def submit_signed_transaction(self, request_id: str) -> bool:
        """Submit a signed request and wait for the outcome. Never raises on network failure."""
        request = await self._get_request(request_id)
        if request is None:
            logger.warning("Settlement requested for unknown signing request %s", request_id)
            return False
        if not request.signature:
            logger.warning("Signing request %s has no signature, not submitting", request_id)
            return False

        try:
            await self._swap(request_id, ("signed",), status="submitted")
        except Conflict:
            logger.info("Signing request %s already past signed, skipping submit", request_id)
            return False
        await self.session.commit()

        settlement_signature = None
        try:
            signed_tx = combine_transaction_with_signature(
                request.unsigned_transaction, request.signature,
            )
            settlement_signature = await self.collaborators.settlement.submit(signed_tx)

            await self.session.execute(
                update(SigningRequest)
                .where(SigningRequest.request_id == request_id)
                .values(settlement_signature=settlement_signature, updated_at=self.clock())
            )
            await self.audit.append(
                request.user_id,
                SettlementSubmitted(settlement_signature=settlement_signature),
                intent_id=request.intent_id,
                signing_request_id=request_id,
            )
            await self.session.commit()

            confirmation = await self.collaborators.settlement.confirm(settlement_signature)
        except Exception as exc:
            message = exc.message if isinstance(exc, SpendGateError) else str(exc)
            if isinstance(exc, SpendGateError):
                logger.warning("Settlement submit failed for %s: %s", request_id, message)
            else:
                logger.exception("Unexpected settlement error for %s", request_id)
            # The request row stays submitted (committed above); discard partial writes only
            await self.session.rollback()
            await self.rollback(request_id, message, settlement_signature)
            return False

        if confirmation.confirmed:
            return await self.finalize(
                request_id, settlement_signature, confirmation.time_ms, confirmation.slot,
            )
        await self.rollback(
            request_id, confirmation.error or "Confirmation failed", settlement_signature,
        )
        return False

    async def finalize(
        self,
        request_id: str,
        settlement_signature: str,
        confirmation_time_ms: int,
        slot: int | None = None,
    ) -> bool:
        try:
            await self._swap(
                request_id, ("submitted",),
                status="confirmed",
                settlement_signature=settlement_signature,
                confirmation_time_ms=confirmation_time_ms,
            )
        except Conflict:
            logger.info("Signing request %s already settled, finalize is a no-op", request_id)
            return False

        request = await self._get_request(request_id)
        within_target = confirmation_time_ms <= settings.settlement_target_ms

        await self.intents.set_intent_status(
            request.intent_id, "completed", settlement_signature=settlement_signature,
        )
        plan = await self.plans.get_plan_for_intent(request.intent_id)
        if plan is not None:
            await self.plans.set_plan_status(plan.plan_id, "completed")

        self.session.add(SettlementRecord(
            signing_request_id=request.id,
            intent_id=request.intent_id,
            user_id=request.user_id,
            settlement_signature=settlement_signature,
            confirmation_time_ms=confirmation_time_ms,
            within_target=within_target,
            slot=slot,
            status="confirmed",
            created_at=self.clock(),
        ))
        await self.audit.append(
            request.user_id,
            SettlementConfirmed(
                settlement_signature=settlement_signature,
                confirmation_time_ms=confirmation_time_ms,
                slot=slot,
            ),
            intent_id=request.intent_id,
            plan_id=plan.plan_id if plan else None,
            signing_request_id=request_id,
        )
        settlement_confirmation_seconds.observe(confirmation_time_ms / 1000)
        logger.info(
            "Signing request %s confirmed in %dms (target %dms)",
            request_id, confirmation_time_ms, settings.settlement_target_ms,
        )
        return True

    async def rollback(
        self,
        request_id: str,
        error: str,
        settlement_signature: str | None = None,
    ) -> bool:
        try:
            await self._swap(request_id, ("submitted",), status="failed", error=error[:1000])
        except Conflict:
            logger.info("Signing request %s already settled, rollback is a no-op", request_id)
            return False

        request = await self._get_request(request_id)
        await self.intents.set_intent_status(
            request.intent_id, "failed", error_code="SETTLEMENT_FAILED", error_message=error,
        )
        plan = await self.plans.get_plan_for_intent(request.intent_id)
        if plan is not None:
            await self.plans.set_plan_status(plan.plan_id, "failed")

        self.session.add(SettlementRecord(
            signing_request_id=request.id,
            intent_id=request.intent_id,
            user_id=request.user_id,
            settlement_signature=settlement_signature,
            status="failed",
            error=error[:1000],
            created_at=self.clock(),
        ))
        await self.audit.append(
            request.user_id,
            SettlementFailed(error=error, settlement_signature=settlement_signature),
            intent_id=request.intent_id,
            plan_id=plan.plan_id if plan else None,
            signing_request_id=request_id,
        )
        logger.warning("Settlement failed for %s: %s", request_id, error)
        return True

    async def handle_settlement_notification(
        self,
        settlement_signature: str,
        status: str,
        slot: int | None = None,
        error: str | None = None,
    ) -> bool:
        """Settlement-network webhook. True if it moved a request."""
        result = await self.session.execute(
            select(SigningRequest).where(SigningRequest.settlement_signature == settlement_signature)
        )
        request = result.scalar_one_or_none()
        if request is None:
            logger.warning("Settlement notification for unknown signature %s", settlement_signature)
            return False
        if request.status != "submitted":
            logger.info(
                "Settlement notification for %s ignored, request is %s",
                request.request_id, request.status,
            )
            return False

        status = status.lower()
        if status in CONFIRMED_NOTIFICATIONS:
            elapsed = self.clock() - request.updated_at
            return await self.finalize(
                request.request_id, settlement_signature,
                max(0, int(elapsed.total_seconds() * 1000)), slot,
            )
        if status in FAILED_NOTIFICATIONS:
            return await self.rollback(
                request.request_id, error or f"Settlement {status}", settlement_signature,
            )
        logger.info("Settlement notification %s for %s ignored", status, request.request_id)
        return False

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def sweep_stuck_submissions(self) -> int:
        """Resolve requests left in submitted by a worker that died mid-settlement."""
        cutoff = self.clock() - timedelta(seconds=settings.settlement_stale_seconds)
        result = await self.session.execute(
            select(SigningRequest).where(
                SigningRequest.status == "submitted",
                SigningRequest.updated_at <= cutoff,
            )
        )
        resolved = 0
        for request in result.scalars().all():
            if await self._recover(request.request_id, request.settlement_signature):
                resolved += 1
        if resolved:
            logger.info("Resolved %d stuck settlement submissions", resolved)
        return resolved

    async def _recover(self, request_id: str, settlement_signature: str | None) -> bool:
        if not settlement_signature:
            return await self.rollback(request_id, "Settlement interrupted before submission was recorded")
        try:
            confirmation = await self.collaborators.settlement.confirm(settlement_signature)
        except SpendGateError as exc:
            # Left submitted; the next sweep asks again
            logger.warning(
                "Could not re-check settlement %s for %s: %s", settlement_signature, request_id, exc.message,
            )
            return False
        if confirmation.confirmed:
            return await self.finalize(
                request_id, settlement_signature, confirmation.time_ms, confirmation.slot,
            )
        return await self.rollback(
            request_id, confirmation.error or "Confirmation failed", settlement_signature,
        )
