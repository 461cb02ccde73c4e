"""
Records owned by collaborating systems (intent parsing, planning, account
management). The orchestration core reads them and writes only their
status columns.
"""

from datetime import datetime

from sqlalchemy import String, DateTime, Integer, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from spendgate.database import Base, JSONType, utcnow


class Intent(Base):
    __tablename__ = "intents"

    id: Mapped[int] = mapped_column(primary_key=True)
    intent_id: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    action: Mapped[str] = mapped_column(String(30))  # fund_card, transfer, swap, ...
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    destination: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="ready", index=True)
    error_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    settlement_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ExecutionPlan(Base):
    __tablename__ = "execution_plans"

    id: Mapped[int] = mapped_column(primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    intent_id: Mapped[str] = mapped_column(String(40), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    goal_recap: Mapped[str] = mapped_column(String(500))
    steps: Mapped[list] = mapped_column(JSONType, default=list)
    total_max_spend_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_estimated_fee_cents: Mapped[int] = mapped_column(Integer, default=0)
    expected_outcome: Mapped[str | None] = mapped_column(String(500), nullable=True)
    warnings: Mapped[list] = mapped_column(JSONType, default=list)
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class WalletConfig(Base):
    __tablename__ = "wallet_configs"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    sub_organization_id: Mapped[str] = mapped_column(String(100))
    wallet_address: Mapped[str] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), default="active")  # active | suspended | frozen

    # Policy limits (cents); spend counters are maintained by the ledger
    per_transaction_limit_cents: Mapped[int] = mapped_column(Integer)
    daily_limit_cents: Mapped[int] = mapped_column(Integer)
    monthly_limit_cents: Mapped[int] = mapped_column(Integer)
    current_daily_spend_cents: Mapped[int] = mapped_column(Integer, default=0)
    current_monthly_spend_cents: Mapped[int] = mapped_column(Integer, default=0)
    spend_reset_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    require_2fa_above_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    require_biometric: Mapped[bool] = mapped_column(Boolean, default=False)
    blocked_destinations: Mapped[list] = mapped_column(JSONType, default=list)
