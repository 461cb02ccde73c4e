"""
Collaborator stores — plan, intent and wallet records.

These rows belong to the planning, intent and account-management systems;
the core reads them and writes only status columns. Terminal plan/intent
statuses are never overwritten.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.database import utcnow
from spendgate.exceptions import Conflict
from spendgate.models import ExecutionPlan, Intent, WalletConfig
from spendgate.services.transitions import compare_and_set

logger = logging.getLogger(__name__)

PLAN_TERMINAL = frozenset({"completed", "failed", "cancelled"})
PLAN_STATUSES = frozenset({"draft", "awaiting_approval", "approved", "executing"}) | PLAN_TERMINAL

INTENT_TERMINAL = frozenset({"completed", "failed", "cancelled"})
INTENT_STATUSES = frozenset({"ready", "awaiting_approval", "approved", "executing"}) | INTENT_TERMINAL


class PlanStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_plan(self, plan_id: str) -> ExecutionPlan | None:
        result = await self.session.execute(
            select(ExecutionPlan).where(ExecutionPlan.plan_id == plan_id)
        )
        return result.scalar_one_or_none()

    async def get_plan_for_intent(self, intent_id: str) -> ExecutionPlan | None:
        result = await self.session.execute(
            select(ExecutionPlan)
            .where(ExecutionPlan.intent_id == intent_id)
            .order_by(ExecutionPlan.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def set_plan_status(
        self,
        plan_id: str,
        status: str,
        *,
        expected: frozenset[str] | set[str] | None = None,
        **fields,
    ) -> bool:
        """Move a plan to `status`. Returns False when the plan already finished."""
        allowed_from = expected if expected is not None else PLAN_STATUSES - PLAN_TERMINAL
        try:
            await compare_and_set(
                self.session, ExecutionPlan, ExecutionPlan.plan_id, plan_id,
                allowed_from, status=status, **fields,
            )
        except Conflict:
            if expected is not None:
                raise
            logger.info("Plan %s already terminal, not moving to %s", plan_id, status)
            return False
        return True


class IntentStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_intent(self, intent_id: str) -> Intent | None:
        result = await self.session.execute(
            select(Intent).where(Intent.intent_id == intent_id)
        )
        return result.scalar_one_or_none()

    async def set_intent_status(
        self,
        intent_id: str,
        status: str,
        *,
        error_code: str | None = None,
        error_message: str | None = None,
        **fields,
    ) -> bool:
        """Move an intent to `status`. Returns False when the intent already finished."""
        values = {"status": status, "updated_at": utcnow(), **fields}
        if error_code is not None:
            values["error_code"] = error_code
        if error_message is not None:
            values["error_message"] = error_message[:1000]
        try:
            await compare_and_set(
                self.session, Intent, Intent.intent_id, intent_id,
                INTENT_STATUSES - INTENT_TERMINAL, **values,
            )
        except Conflict:
            logger.info("Intent %s already terminal, not moving to %s", intent_id, status)
            return False
        return True


class WalletStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_wallet_config(self, user_id: str) -> WalletConfig | None:
        result = await self.session.execute(
            select(WalletConfig).where(WalletConfig.user_id == user_id)
        )
        return result.scalar_one_or_none()
