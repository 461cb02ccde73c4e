"""
Approvals API Router — queue plans for approval, approve, reject, cancel countdowns.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.api.deps import get_db, require
from spendgate.auth.context import RequestContext
from spendgate.auth.permissions import Permission
from spendgate.exceptions import ApprovalNotFound, PlanNotFound
from spendgate.schemas.schemas import (
    ApprovalCreateRequest,
    ApprovalListResponse,
    ApprovalOut,
    ApprovalRejectRequest,
)
from spendgate.services.approval_orchestrator import ApprovalOrchestrator, decide_approval_mode

router = APIRouter(prefix="/api/approvals", tags=["approvals"])


async def _load_for_actor(
    orchestrator: ApprovalOrchestrator, approval_id: str, ctx: RequestContext,
):
    """Fetch an approval and resolve whose behalf the caller acts on."""
    entry = await orchestrator.get_approval(approval_id)
    if entry is None:
        raise ApprovalNotFound(f"Approval {approval_id} not found")
    return entry, ctx.subject_user(entry.user_id)


@router.post("", response_model=ApprovalOut, status_code=201)
async def create_approval(
    body: ApprovalCreateRequest,
    ctx: RequestContext = Depends(require(Permission.APPROVALS_ACT)),
    db: AsyncSession = Depends(get_db),
):
    """Queue a plan for approval. Mode defaults by amount when not given."""
    orchestrator = ApprovalOrchestrator(db)
    plan = await orchestrator.plans.get_plan(body.plan_id)
    if plan is None:
        raise PlanNotFound(f"Plan {body.plan_id} not found")
    user_id = ctx.subject_user(plan.user_id)

    mode = body.mode or decide_approval_mode(plan.total_max_spend_cents or 0)
    entry = await orchestrator.create_approval(
        user_id=user_id,
        plan_id=plan.plan_id,
        intent_id=plan.intent_id,
        preview=None,
        mode=mode,
        countdown_duration_ms=body.countdown_duration_ms,
    )
    return ApprovalOut.model_validate(entry)


@router.get("/pending", response_model=ApprovalListResponse)
async def list_pending(
    user_id: str | None = Query(None, description="Another user's queue (admin only)"),
    ctx: RequestContext = Depends(require(Permission.APPROVALS_READ)),
    db: AsyncSession = Depends(get_db),
):
    entries = await ApprovalOrchestrator(db).list_pending(ctx.subject_user(user_id))
    return ApprovalListResponse(items=[ApprovalOut.model_validate(e) for e in entries])


@router.get("/history", response_model=ApprovalListResponse)
async def list_history(
    limit: int = Query(50, ge=1, le=200),
    user_id: str | None = Query(None, description="Another user's history (admin only)"),
    ctx: RequestContext = Depends(require(Permission.APPROVALS_READ)),
    db: AsyncSession = Depends(get_db),
):
    entries = await ApprovalOrchestrator(db).list_history(ctx.subject_user(user_id), limit=limit)
    return ApprovalListResponse(items=[ApprovalOut.model_validate(e) for e in entries])


@router.get("/by-plan/{plan_id}", response_model=ApprovalOut)
async def get_approval_by_plan(
    plan_id: str,
    ctx: RequestContext = Depends(require(Permission.APPROVALS_READ)),
    db: AsyncSession = Depends(get_db),
):
    entry = await ApprovalOrchestrator(db).get_approval_by_plan(plan_id)
    if entry is None:
        raise ApprovalNotFound(f"No approval for plan {plan_id}")
    ctx.subject_user(entry.user_id)
    return ApprovalOut.model_validate(entry)


@router.get("/{approval_id}", response_model=ApprovalOut)
async def get_approval(
    approval_id: str,
    ctx: RequestContext = Depends(require(Permission.APPROVALS_READ)),
    db: AsyncSession = Depends(get_db),
):
    entry, _ = await _load_for_actor(ApprovalOrchestrator(db), approval_id, ctx)
    return ApprovalOut.model_validate(entry)


@router.post("/{approval_id}/approve", response_model=ApprovalOut)
async def approve(
    approval_id: str,
    ctx: RequestContext = Depends(require(Permission.APPROVALS_ACT)),
    db: AsyncSession = Depends(get_db),
):
    orchestrator = ApprovalOrchestrator(db)
    _, user_id = await _load_for_actor(orchestrator, approval_id, ctx)
    await orchestrator.approve(approval_id, user_id)
    return ApprovalOut.model_validate(await _reload(orchestrator, approval_id))


@router.post("/{approval_id}/reject", response_model=ApprovalOut)
async def reject(
    approval_id: str,
    body: ApprovalRejectRequest | None = None,
    ctx: RequestContext = Depends(require(Permission.APPROVALS_ACT)),
    db: AsyncSession = Depends(get_db),
):
    orchestrator = ApprovalOrchestrator(db)
    _, user_id = await _load_for_actor(orchestrator, approval_id, ctx)
    await orchestrator.reject(approval_id, user_id, reason=body.reason if body else None)
    return ApprovalOut.model_validate(await _reload(orchestrator, approval_id))


@router.post("/{approval_id}/cancel", response_model=ApprovalOut)
async def cancel_countdown(
    approval_id: str,
    ctx: RequestContext = Depends(require(Permission.APPROVALS_ACT)),
    db: AsyncSession = Depends(get_db),
):
    orchestrator = ApprovalOrchestrator(db)
    _, user_id = await _load_for_actor(orchestrator, approval_id, ctx)
    await orchestrator.cancel_countdown(approval_id, user_id)
    return ApprovalOut.model_validate(await _reload(orchestrator, approval_id))


async def _reload(orchestrator: ApprovalOrchestrator, approval_id: str):
    # Status columns are written with UPDATE statements, not through the ORM object
    entry = await orchestrator.get_approval(approval_id)
    await orchestrator.session.refresh(entry)
    return entry
