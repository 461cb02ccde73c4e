"""
Signing API Router — signing request views, activity recording, policy checks.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.api.deps import get_collaborators, get_db, require
from spendgate.auth.context import RequestContext
from spendgate.auth.permissions import Permission
from spendgate.exceptions import SigningRequestNotFound
from spendgate.schemas.schemas import (
    BridgeMetricsResponse,
    PolicyDecisionOut,
    PolicyVerifyRequest,
    RecordActivityRequest,
    SigningApprovalView,
    SigningListResponse,
    SigningRequestOut,
)
from spendgate.services.signing_bridge import SigningBridge

router = APIRouter(prefix="/api/signing", tags=["signing"])


def _bridge(db: AsyncSession) -> SigningBridge:
    return SigningBridge(db, get_collaborators())


@router.get("/pending", response_model=SigningListResponse)
async def list_pending(
    user_id: str | None = Query(None, description="Another user's requests (admin only)"),
    ctx: RequestContext = Depends(require(Permission.SIGNING_READ)),
    db: AsyncSession = Depends(get_db),
):
    requests = await _bridge(db).list_pending_requests(ctx.subject_user(user_id))
    return SigningListResponse(items=[SigningRequestOut.model_validate(r) for r in requests])


@router.get("/metrics", response_model=BridgeMetricsResponse)
async def bridge_metrics(
    user_id: str | None = Query(None),
    ctx: RequestContext = Depends(require(Permission.SIGNING_READ)),
    db: AsyncSession = Depends(get_db),
):
    return BridgeMetricsResponse(**await _bridge(db).bridge_metrics(ctx.subject_user(user_id)))


@router.post("/policy/verify", response_model=PolicyDecisionOut)
async def verify_policy(
    body: PolicyVerifyRequest,
    ctx: RequestContext = Depends(require(Permission.SIGNING_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Dry-run the spend policy for a proposed transaction."""
    decision = await _bridge(db).verify_transaction_policy(
        ctx.subject_user(body.user_id),
        body.transaction_type,
        body.amount_cents,
        body.destination,
    )
    return PolicyDecisionOut(**decision.to_dict())


@router.get("/{request_id}", response_model=SigningApprovalView)
async def get_signing_request(
    request_id: str,
    ctx: RequestContext = Depends(require(Permission.SIGNING_READ)),
    db: AsyncSession = Depends(get_db),
):
    view = await _bridge(db).get_signing_request_for_approval(request_id)
    if view is None:
        raise SigningRequestNotFound(f"Signing request {request_id} not found")
    ctx.subject_user(view.pop("user_id"))
    return SigningApprovalView(**view)


@router.post("/{request_id}/activity", response_model=SigningRequestOut)
async def record_activity(
    request_id: str,
    body: RecordActivityRequest,
    ctx: RequestContext = Depends(require(Permission.SIGNING_ACT)),
    db: AsyncSession = Depends(get_db),
):
    """Bind a signer activity the client started (e.g. a passkey prompt)."""
    bridge = _bridge(db)
    request = await bridge.get_signing_request(request_id)
    if request is None:
        raise SigningRequestNotFound(f"Signing request {request_id} not found")
    ctx.subject_user(request.user_id)

    request = await bridge.record_activity(
        request_id, body.activity_id, body.activity_type, body.status,
    )
    await db.refresh(request)
    return SigningRequestOut.model_validate(request)
