from datetime import datetime

from sqlalchemy import String, DateTime, Integer, Boolean, Text, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spendgate.database import Base, JSONType, utcnow


class SigningRequest(Base):
    __tablename__ = "signing_requests"

    id: Mapped[int] = mapped_column(primary_key=True)
    request_id: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    intent_id: Mapped[str] = mapped_column(String(40), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    sub_organization_id: Mapped[str] = mapped_column(String(100))
    wallet_address: Mapped[str] = mapped_column(String(100))
    unsigned_transaction: Mapped[str] = mapped_column(Text)
    transaction_message: Mapped[str] = mapped_column(String(1000))
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    turnkey_activity_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    settlement_signature: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    error: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    confirmation_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    activities: Mapped[list["SigningActivity"]] = relationship(back_populates="signing_request")


class SigningActivity(Base):
    __tablename__ = "signing_activities"

    id: Mapped[int] = mapped_column(primary_key=True)
    signing_request_id: Mapped[int] = mapped_column(ForeignKey("signing_requests.id"), index=True)
    activity_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    activity_type: Mapped[str] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(50), index=True)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    signing_request: Mapped["SigningRequest"] = relationship(back_populates="activities")


class SettlementRecord(Base):
    __tablename__ = "settlement_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    signing_request_id: Mapped[int] = mapped_column(ForeignKey("signing_requests.id"), index=True)
    intent_id: Mapped[str] = mapped_column(String(40), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    settlement_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    confirmation_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    within_target: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    slot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20))  # "confirmed" | "failed"
    error: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
