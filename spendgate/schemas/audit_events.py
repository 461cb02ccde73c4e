"""
Typed audit event payloads.

Each audit event kind has its own model; `AuditEvent` is the discriminated
union keyed on `event_type`. The hash chain only ever sees
`event.model_dump(mode="json")`, so adding a kind never touches chain logic.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class _Event(BaseModel):
    model_config = {"extra": "forbid"}


# ── Approval lifecycle ──

class ApprovalRequested(_Event):
    event_type: Literal["approval_requested"] = "approval_requested"
    approval_mode: str
    total_max_spend_usd: str
    expires_at: str


class CountdownStarted(_Event):
    event_type: Literal["countdown_started"] = "countdown_started"
    countdown_duration_ms: int
    auto_approve_at: str


class ApprovalGranted(_Event):
    event_type: Literal["approval_granted"] = "approval_granted"
    approved_by: Literal["user", "auto"]


class ApprovalRejected(_Event):
    event_type: Literal["approval_rejected"] = "approval_rejected"
    reason: str | None = None


class CountdownCancelled(_Event):
    event_type: Literal["countdown_cancelled"] = "countdown_cancelled"


class ApprovalExpired(_Event):
    event_type: Literal["approval_expired"] = "approval_expired"
    previous_status: str


# ── Execution / policy ──

class PolicyEvaluated(_Event):
    event_type: Literal["policy_evaluated"] = "policy_evaluated"
    transaction_type: str
    amount_cents: int | None = None
    allowed: bool
    reason: str | None = None
    requires_2fa: bool = False
    requires_biometric: bool = False


class ExecutionStarted(_Event):
    event_type: Literal["execution_started"] = "execution_started"
    action: str
    amount_cents: int | None = None


class ExecutionFailed(_Event):
    event_type: Literal["execution_failed"] = "execution_failed"
    error_code: str
    error: str


# ── Signing lifecycle ──

class SigningRequested(_Event):
    event_type: Literal["signing_requested"] = "signing_requested"
    wallet_address: str
    transaction_message: str


class SigningActivityRecorded(_Event):
    event_type: Literal["signing_activity_recorded"] = "signing_activity_recorded"
    activity_id: str
    activity_type: str
    activity_status: str
    request_status: str


class SigningCompleted(_Event):
    event_type: Literal["signing_completed"] = "signing_completed"
    activity_id: str


class SigningFailed(_Event):
    event_type: Literal["signing_failed"] = "signing_failed"
    activity_id: str
    error: str


class SigningRejected(_Event):
    event_type: Literal["signing_rejected"] = "signing_rejected"
    activity_id: str


class SigningTimedOut(_Event):
    event_type: Literal["signing_timed_out"] = "signing_timed_out"
    previous_status: str
    timeout_seconds: int


# ── Settlement ──

class SettlementSubmitted(_Event):
    event_type: Literal["settlement_submitted"] = "settlement_submitted"
    settlement_signature: str


class SettlementConfirmed(_Event):
    event_type: Literal["settlement_confirmed"] = "settlement_confirmed"
    settlement_signature: str
    confirmation_time_ms: int
    slot: int | None = None


class SettlementFailed(_Event):
    event_type: Literal["settlement_failed"] = "settlement_failed"
    error: str
    settlement_signature: str | None = None


AuditEvent = Annotated[
    Union[
        ApprovalRequested,
        CountdownStarted,
        ApprovalGranted,
        ApprovalRejected,
        CountdownCancelled,
        ApprovalExpired,
        PolicyEvaluated,
        ExecutionStarted,
        ExecutionFailed,
        SigningRequested,
        SigningActivityRecorded,
        SigningCompleted,
        SigningFailed,
        SigningRejected,
        SigningTimedOut,
        SettlementSubmitted,
        SettlementConfirmed,
        SettlementFailed,
    ],
    Field(discriminator="event_type"),
]

audit_event_adapter: TypeAdapter[AuditEvent] = TypeAdapter(AuditEvent)


def parse_event(data: dict) -> AuditEvent:
    """Rebuild a typed event from a stored `event_data` dict."""
    return audit_event_adapter.validate_python(data)
