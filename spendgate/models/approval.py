from datetime import datetime

from sqlalchemy import String, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from spendgate.database import Base, JSONType, utcnow


class ApprovalEntry(Base):
    __tablename__ = "approval_queue"

    id: Mapped[int] = mapped_column(primary_key=True)
    approval_id: Mapped[str] = mapped_column(String(30), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    plan_id: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    intent_id: Mapped[str] = mapped_column(String(40), index=True)
    preview: Mapped[dict] = mapped_column(JSONType, default=dict)
    approval_mode: Mapped[str] = mapped_column(String(10))  # "auto" | "manual"
    countdown_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    countdown_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_approve_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(10), nullable=True)  # "user" | "auto"
    rejection_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
