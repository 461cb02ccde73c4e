"""
API Dependencies — DB session, collaborators, auth context, permission guards.

`get_request_context`:
  1. Extracts the Bearer token from the Authorization header
  2. Decodes and validates the JWT
  3. Resolves role → permissions via ROLE_PERMISSIONS
  4. Returns a properly scoped RequestContext

Auth-exempt paths (no token required):
  /api/health, /metrics, and the webhook receivers (HMAC-authenticated)
"""

import logging
from typing import AsyncGenerator

from fastapi import Depends, Request, HTTPException
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.database import async_session
from spendgate.auth.permissions import Permission
from spendgate.auth.roles import Role, ROLE_PERMISSIONS
from spendgate.auth.context import RequestContext
from spendgate.auth.jwt import decode_access_token
from spendgate.clients import Collaborators
from spendgate.services.scheduler import commit_and_notify

logger = logging.getLogger(__name__)

# Paths that do not require a bearer token
AUTH_EXEMPT_PATHS = {
    "/api/health",
    "/metrics",
    "/api/webhooks/signer",
    "/api/webhooks/settlement",
}


# ── Database session ─────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session per request, commit on success, rollback on error.

    Tasks scheduled during the request wake the worker after commit.
    """
    async with async_session() as session:
        try:
            yield session
            await commit_and_notify(session)
        except Exception:
            await session.rollback()
            raise


# ── Outbound collaborators ───────────────────────────────────────────────────

_collaborators: Collaborators | None = None


def get_collaborators() -> Collaborators:
    global _collaborators
    if _collaborators is None:
        _collaborators = Collaborators.from_settings()
    return _collaborators


# ── Request context (JWT authentication) ──────────────────────────────────────

async def get_request_context(request: Request) -> RequestContext:
    path = request.url.path.rstrip("/")

    if path in AUTH_EXEMPT_PATHS:
        return RequestContext(user_id="anonymous", role=Role.USER, permissions=set())

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    token = auth_header[7:]  # strip "Bearer "
    try:
        claims = decode_access_token(token)
    except JWTError as e:
        logger.debug("JWT decode failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")

    try:
        role = Role(claims.get("role", "user"))
    except ValueError:
        role = Role.USER

    return RequestContext(
        user_id=user_id,
        role=role,
        permissions=ROLE_PERMISSIONS.get(role, set()),
    )


# ── Permission guards ────────────────────────────────────────────────────────

def require(*perms: Permission):
    """
    FastAPI dependency that checks the caller has ALL listed permissions.

    Usage:
        @router.get("/approvals/pending")
        async def pending(ctx: RequestContext = Depends(require(Permission.APPROVALS_READ))):
            ...
    """
    async def _check(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        for p in perms:
            ctx.require_permission(p)
        return ctx
    return _check
