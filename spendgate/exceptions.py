"""
Error taxonomy for the orchestration core.

Synchronous callers (API routes) receive these as typed errors; the FastAPI
handler in main.py maps `status_code` onto the HTTP response. Asynchronous
entry points (scheduled tasks, webhooks) catch them at their boundary.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spendgate.services.policy_gate import PolicyDecision


class SpendGateError(Exception):
    status_code: int = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFound(SpendGateError):
    status_code = 404


class PlanNotFound(NotFound):
    pass


class IntentNotFound(NotFound):
    pass


class ApprovalNotFound(NotFound):
    pass


class SigningRequestNotFound(NotFound):
    pass


class Unauthorized(SpendGateError):
    status_code = 403


class InvalidState(SpendGateError):
    status_code = 409


class Conflict(SpendGateError):
    """A compare-and-swap lost: the row's status changed under us."""

    status_code = 409

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected: tuple[str, ...] = (),
        message: str | None = None,
    ):
        super().__init__(
            message or f"{entity} {entity_id} is no longer in status {'/'.join(expected)}"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected


class PolicyViolation(SpendGateError):
    status_code = 422

    def __init__(self, decision: PolicyDecision):
        super().__init__(f"Policy violation: {decision.reason or 'not allowed'}")
        self.decision = decision


class NoWalletConfigured(SpendGateError):
    status_code = 422

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} has no signing wallet configured")
        self.user_id = user_id


class ExternalFailure(SpendGateError):
    """Signer, execution engine or settlement network returned an error."""

    status_code = 502
