"""HTTP client for the execution engine that builds unsigned transactions."""

import logging
from dataclasses import dataclass

import httpx

from spendgate.config import settings
from spendgate.exceptions import ExternalFailure
from spendgate.models import ExecutionPlan, Intent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuiltTransaction:
    unsigned_transaction: str  # base64 wire transaction, signature slot empty
    transaction_message: str  # human-readable summary shown at signing time


class HttpExecutionEngine:
    def __init__(self, base_url: str | None = None, timeout: float = 15.0):
        self.base_url = (base_url or settings.execution_engine_url).rstrip("/")
        self.timeout = timeout

    async def build_transaction(
        self, intent: Intent, plan: ExecutionPlan | None,
    ) -> BuiltTransaction:
        body = {
            "intent_id": intent.intent_id,
            "user_id": intent.user_id,
            "action": intent.action,
            "amount_cents": intent.amount_cents,
            "currency": intent.currency,
            "destination": intent.destination,
            "plan_id": plan.plan_id if plan else None,
            "steps": plan.steps if plan else [],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/api/transactions/build", json=body)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as exc:
            logger.warning("Execution engine call failed for %s: %s", intent.intent_id, exc)
            raise ExternalFailure(f"Execution engine error: {exc}") from exc

        unsigned = data.get("unsigned_transaction")
        if not unsigned:
            raise ExternalFailure("Execution engine returned no transaction")
        return BuiltTransaction(
            unsigned_transaction=unsigned,
            transaction_message=data.get("transaction_message") or f"{intent.action} {intent.intent_id}",
        )
