"""
Webhook receivers — signer activity updates and settlement-network notifications.

Both endpoints authenticate with the shared-secret HMAC (see
services/webhook_auth.py) instead of a bearer token. Once a delivery is
authenticated and well-formed it is always acknowledged with 200: handler
errors are logged and counted, never bounced back to the sender, and
redeliveries are harmless because every transition is compare-and-swap.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.api.deps import get_collaborators, get_db
from spendgate.middleware.metrics import webhook_deliveries_total
from spendgate.schemas.schemas import SettlementWebhookPayload, SignerWebhookPayload, WebhookAck
from spendgate.services.settlement import SettlementService
from spendgate.services.signing_bridge import SigningBridge
from spendgate.services.webhook_auth import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WebhookAuthError,
    verify_webhook,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _authenticated_payload(request: Request, source: str, schema: type[BaseModel]):
    body = await request.body()
    try:
        verify_webhook(
            request.headers.get(TIMESTAMP_HEADER),
            request.headers.get(SIGNATURE_HEADER),
            body,
        )
    except WebhookAuthError as exc:
        webhook_deliveries_total.labels(source=source, outcome="unauthorized").inc()
        logger.warning("Rejected %s webhook: %s", source, exc)
        raise HTTPException(status_code=401, detail=str(exc))

    try:
        return schema.model_validate_json(body)
    except ValidationError as exc:
        webhook_deliveries_total.labels(source=source, outcome="invalid").inc()
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))


@router.post("/signer", response_model=WebhookAck)
async def signer_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await _authenticated_payload(request, "signer", SignerWebhookPayload)
    bridge = SigningBridge(db, get_collaborators())
    try:
        handled = await bridge.handle_activity_completion(
            payload.activity_id, payload.status, payload.result, payload.error,
        )
    except Exception:
        await db.rollback()
        logger.exception("Signer webhook for activity %s failed", payload.activity_id)
        webhook_deliveries_total.labels(source="signer", outcome="error").inc()
        return WebhookAck(handled=False)

    webhook_deliveries_total.labels(
        source="signer", outcome="handled" if handled else "ignored",
    ).inc()
    return WebhookAck(handled=handled)


@router.post("/settlement", response_model=WebhookAck)
async def settlement_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await _authenticated_payload(request, "settlement", SettlementWebhookPayload)
    service = SettlementService(db, get_collaborators())
    try:
        handled = await service.handle_settlement_notification(
            payload.signature, payload.status, payload.slot, payload.error,
        )
    except Exception:
        await db.rollback()
        logger.exception("Settlement webhook for %s failed", payload.signature)
        webhook_deliveries_total.labels(source="settlement", outcome="error").inc()
        return WebhookAck(handled=False)

    webhook_deliveries_total.labels(
        source="settlement", outcome="handled" if handled else "ignored",
    ).inc()
    return WebhookAck(handled=handled)
