"""Shared test fixtures: in-memory database, fake collaborators, API clients."""

import base64
import itertools
from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import spendgate.services.scheduler as scheduler_module
from spendgate.api import deps
from spendgate.auth.jwt import create_access_token
from spendgate.clients import BuiltTransaction, Collaborators, Confirmation, SignerActivity
from spendgate.database import Base
from spendgate.exceptions import ExternalFailure
from spendgate.main import app
from spendgate.middleware.rate_limit import RateLimitMiddleware
from spendgate.models import ExecutionPlan, Intent, WalletConfig
from spendgate.services.scheduler import TaskRunner, commit_and_notify
from spendgate.tasks import build_task_handlers

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


# ── Clock ─────────────────────────────────────────────────────────────────────

class MutableClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 1, 12, 0, 0))


# ── Database ──────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Record worker wake-ups instead of talking to Redis."""
    wakeups = []

    async def _notify():
        wakeups.append(1)

    async def _no_redis(self):
        return None

    monkeypatch.setattr(scheduler_module, "notify_worker", _notify)
    monkeypatch.setattr(RateLimitMiddleware, "_get_redis", _no_redis)
    return wakeups


# ── Seed data ─────────────────────────────────────────────────────────────────

_ids = itertools.count(1)


async def seed_plan(
    session: AsyncSession,
    *,
    user_id: str = USER_ID,
    amount_cents: int = 5000,
    destination: str | None = "card-123",
    with_wallet: bool = True,
    **wallet_overrides,
) -> ExecutionPlan:
    """Insert an intent, its plan and (optionally) the user's wallet, then commit."""
    n = next(_ids)
    intent = Intent(
        intent_id=f"INT-{n:06d}",
        user_id=user_id,
        action="fund_card",
        amount_cents=amount_cents,
        currency="USD",
        destination=destination,
        status="ready",
    )
    plan = ExecutionPlan(
        plan_id=f"PLAN-{n:06d}",
        intent_id=intent.intent_id,
        user_id=user_id,
        goal_recap=f"Fund card with ${amount_cents / 100:.2f}",
        steps=[{
            "description": "Transfer USDC to card",
            "estimated_cost": {"max_spend_cents": amount_cents, "risk_level": "low"},
        }],
        total_max_spend_cents=amount_cents,
        total_estimated_fee_cents=25,
        warnings=[],
        status="draft",
    )
    session.add_all([intent, plan])
    if with_wallet and await _wallet_missing(session, user_id):
        session.add(make_wallet(user_id, **wallet_overrides))
    await session.commit()
    return plan


async def _wallet_missing(session: AsyncSession, user_id: str) -> bool:
    result = await session.execute(select(WalletConfig.id).where(WalletConfig.user_id == user_id))
    return result.scalar_one_or_none() is None


def make_wallet(user_id: str = USER_ID, **overrides) -> WalletConfig:
    values = {
        "user_id": user_id,
        "sub_organization_id": f"suborg-{user_id}",
        "wallet_address": f"Wallet{user_id.replace('-', '')}xyz",
        "status": "active",
        "per_transaction_limit_cents": 100_000,
        "daily_limit_cents": 500_000,
        "monthly_limit_cents": 2_000_000,
        "current_daily_spend_cents": 0,
        "current_monthly_spend_cents": 0,
        "spend_reset_at": datetime(2026, 3, 1, 0, 0, 0),
        "require_2fa_above_cents": None,
        "require_biometric": False,
        "blocked_destinations": [],
    }
    values.update(overrides)
    return WalletConfig(**values)


# ── Fake collaborators ────────────────────────────────────────────────────────

UNSIGNED_TX = base64.b64encode(b"\x01unsigned-transaction-message").decode()
SIGNATURE_R = "ab" * 32
SIGNATURE_S = "cd" * 32


class FakeEngine:
    def __init__(self):
        self.calls = []
        self.error: Exception | None = None

    async def build_transaction(self, intent, plan):
        self.calls.append(intent.intent_id)
        if self.error:
            raise self.error
        return BuiltTransaction(
            unsigned_transaction=UNSIGNED_TX,
            transaction_message=f"Fund card {intent.amount_cents} cents",
        )


class FakeSigner:
    def __init__(self):
        self.calls = []
        self.status = "ACTIVITY_STATUS_PENDING"
        self.result: dict | None = None
        self._ids = itertools.count(1)

    async def sign_raw_payload(self, unsigned_transaction, wallet):
        self.calls.append(wallet.wallet_address)
        return SignerActivity(
            activity_id=f"act-{next(self._ids)}",
            activity_type="ACTIVITY_TYPE_SIGN_RAW_PAYLOAD_V2",
            status=self.status,
            result=self.result,
        )


class FakeSettlement:
    def __init__(self):
        self.submitted = []
        self.confirmed_calls = []
        self.submit_error: Exception | None = None
        self.confirm_error: Exception | None = None
        self.confirmation = Confirmation(confirmed=True, time_ms=120, slot=4242)

    async def submit(self, signed_transaction):
        if self.submit_error:
            raise self.submit_error
        self.submitted.append(signed_transaction)
        return f"settle-sig-{len(self.submitted)}"

    async def confirm(self, signature):
        self.confirmed_calls.append(signature)
        if self.confirm_error:
            raise self.confirm_error
        return self.confirmation


@pytest.fixture
def collaborators() -> Collaborators:
    return Collaborators(engine=FakeEngine(), signer=FakeSigner(), settlement=FakeSettlement())


def completed_result() -> dict:
    return {"signRawPayloadResult": {"r": SIGNATURE_R, "s": SIGNATURE_S, "v": "00"}}


def network_down() -> ExternalFailure:
    return ExternalFailure("Settlement submit failed: connection refused")


# ── Worker ────────────────────────────────────────────────────────────────────

@pytest.fixture
def runner(session_factory, collaborators, clock) -> TaskRunner:
    return TaskRunner(
        session_factory,
        build_task_handlers(collaborators, clock=clock),
        clock=clock,
        batch_size=50,
        lease_seconds=60,
    )


async def drain(runner: TaskRunner) -> int:
    """Run due tasks until none are left (tasks may schedule follow-ups)."""
    total = 0
    while ran := await runner.run_due():
        total += ran
    return total


# ── API clients ───────────────────────────────────────────────────────────────

def _override_db(session_factory: async_sessionmaker):
    """Create a dependency override for get_db backed by the test engine."""
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await commit_and_notify(session)
            except Exception:
                await session.rollback()
                raise
    return _get_db


def auth_header(user_id: str = USER_ID, role: str = "user") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest_asyncio.fixture
async def api(session_factory, collaborators, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated HTTP client; pass headers=auth_header(...) per request."""
    app.dependency_overrides[deps.get_db] = _override_db(session_factory)
    monkeypatch.setattr(deps, "_collaborators", collaborators)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
