"""
Pydantic schemas for API request/response models.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Pagination ──

class PaginatedResponse(BaseModel):
    total: int
    page: int
    size: int
    pages: int


# ── Approvals ──

class ApprovalCreateRequest(BaseModel):
    plan_id: str
    mode: Literal["auto", "manual"] | None = None
    countdown_duration_ms: int | None = Field(None, ge=0, le=600_000)


class ApprovalRejectRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class ApprovalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    approval_id: str
    user_id: str
    plan_id: str
    intent_id: str
    preview: dict
    approval_mode: str
    status: str
    countdown_started_at: datetime | None = None
    countdown_duration_ms: int | None = None
    auto_approve_at: datetime | None = None
    created_at: datetime
    expires_at: datetime
    resolved_at: datetime | None = None
    approved_by: str | None = None
    rejection_reason: str | None = None


class ApprovalListResponse(BaseModel):
    items: list[ApprovalOut]


# ── Signing ──

class SigningRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: str
    intent_id: str
    user_id: str
    wallet_address: str
    transaction_message: str
    status: str
    turnkey_activity_id: str | None = None
    settlement_signature: str | None = None
    error: str | None = None
    confirmation_time_ms: int | None = None
    created_at: datetime
    updated_at: datetime


class SigningIntentSummary(BaseModel):
    action: str
    amount_cents: int | None = None
    currency: str
    destination: str | None = None


class SigningApprovalView(BaseModel):
    request_id: str
    status: str
    wallet_address: str
    transaction_message: str
    intent: SigningIntentSummary | None = None
    created_at: datetime
    requires_approval: bool


class SigningListResponse(BaseModel):
    items: list[SigningRequestOut]


class RecordActivityRequest(BaseModel):
    activity_id: str = Field(..., min_length=1, max_length=100)
    activity_type: str = Field(..., min_length=1, max_length=100)
    status: str = Field(..., min_length=1, max_length=50)


class PolicyVerifyRequest(BaseModel):
    transaction_type: str
    amount_cents: int | None = Field(None, ge=0)
    destination: str | None = None
    user_id: str | None = None


class PolicyDecisionOut(BaseModel):
    allowed: bool
    reason: str | None = None
    requires_override: bool = False
    requires_2fa: bool = False
    requires_biometric: bool = False


class BridgeMetricsResponse(BaseModel):
    total_requests: int
    confirmed: int
    failed: int
    pending: int
    success_rate: float
    avg_confirmation_time_ms: int
    within_target: int


# ── Webhooks ──

class SignerWebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    activity_id: str = Field(..., alias="activityId", min_length=1)
    activity_type: str | None = Field(None, alias="activityType")
    status: str = Field(..., min_length=1)
    result: dict | None = None
    error: str | None = None


class SettlementWebhookPayload(BaseModel):
    signature: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    slot: int | None = None
    error: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
    handled: bool


# ── Audit ──

class AuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    user_id: str
    sequence: int
    event_type: str
    intent_id: str | None = None
    plan_id: str | None = None
    approval_id: str | None = None
    signing_request_id: str | None = None
    event_data: dict
    previous_hash: str
    event_hash: str
    timestamp: datetime


class AuditListResponse(PaginatedResponse):
    items: list[AuditEntry]


class IntegrityCheckResponse(BaseModel):
    user_id: str
    valid: bool
    entries_checked: int
    first_invalid: str | None = None
    reason: str | None = None
