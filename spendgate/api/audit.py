"""
Audit API Router — query a user's audit chain and verify its integrity.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.api.deps import get_db, require
from spendgate.auth.permissions import Permission
from spendgate.auth.context import RequestContext
from spendgate.services.audit_chain import AuditChain
from spendgate.schemas.schemas import AuditListResponse, AuditEntry, IntegrityCheckResponse

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("", response_model=AuditListResponse)
async def list_audit_entries(
    event_type: str | None = Query(None, description="Filter by event type"),
    user_id: str | None = Query(None, description="Another user's chain (admin only)"),
    page: int = Query(1, ge=1, description="Page number"),
    size: int = Query(50, ge=1, le=200, description="Page size"),
    ctx: RequestContext = Depends(require(Permission.AUDIT_READ)),
    db: AsyncSession = Depends(get_db),
) -> AuditListResponse:
    """Return a paginated, newest-first page of the user's audit chain."""
    subject = ctx.subject_user(user_id)
    chain = AuditChain(db)
    offset = (page - 1) * size

    entries = await chain.get_entries(subject, event_type=event_type, limit=size, offset=offset)
    total = await chain.count_entries(subject, event_type=event_type)
    pages = (total + size - 1) // size if total > 0 else 1

    return AuditListResponse(
        total=total,
        page=page,
        size=size,
        pages=pages,
        items=[AuditEntry.model_validate(entry) for entry in entries],
    )


@router.get("/integrity", response_model=IntegrityCheckResponse)
async def check_integrity(
    user_id: str | None = Query(None, description="Another user's chain (admin only)"),
    ctx: RequestContext = Depends(require(Permission.AUDIT_READ)),
    db: AsyncSession = Depends(get_db),
) -> IntegrityCheckResponse:
    """Re-walk the user's hash chain from genesis."""
    subject = ctx.subject_user(user_id)
    result = await AuditChain(db).verify_chain(subject)
    return IntegrityCheckResponse(user_id=subject, **result)
