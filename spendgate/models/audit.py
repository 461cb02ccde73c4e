from datetime import datetime

from sqlalchemy import String, DateTime, Integer, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spendgate.database import Base, JSONType


class AuditLog(Base):
    __tablename__ = "audit_log"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_audit_log_user_sequence"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    event_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    sequence: Mapped[int] = mapped_column(Integer)
    event_type: Mapped[str] = mapped_column(String(40), index=True)
    intent_id: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    plan_id: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    approval_id: Mapped[str | None] = mapped_column(String(30), nullable=True)
    signing_request_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    event_data: Mapped[dict] = mapped_column(JSONType, default=dict)
    previous_hash: Mapped[str] = mapped_column(String(64))
    event_hash: Mapped[str] = mapped_column(String(64))
    anchored_to_chain: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
