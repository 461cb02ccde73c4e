"""Tests for the per-user hash-chained audit log."""

import pytest
from pydantic import ValidationError
from sqlalchemy import update

from spendgate.models import AuditLog
from spendgate.schemas.audit_events import (
    ApprovalGranted,
    ApprovalRequested,
    CountdownCancelled,
    SettlementConfirmed,
    parse_event,
)
from spendgate.services.audit_chain import GENESIS_HASH, AuditChain, compute_event_hash


def _requested() -> ApprovalRequested:
    return ApprovalRequested(
        approval_mode="manual", total_max_spend_usd="$50.00", expires_at="2026-03-01T12:05:00",
    )


class TestAppend:
    async def test_first_entry_links_to_genesis(self, session_factory, clock):
        async with session_factory() as session:
            chain = AuditChain(session, clock=clock)
            entry = await chain.append("alice", _requested(), plan_id="PLAN-1")
            await session.commit()

        assert entry.sequence == 1
        assert entry.previous_hash == GENESIS_HASH
        assert entry.event_type == "approval_requested"
        assert entry.plan_id == "PLAN-1"
        assert entry.event_hash == compute_event_hash(
            "alice", 1, "approval_requested", clock.now, entry.event_data, GENESIS_HASH,
        )

    async def test_entries_chain_per_user(self, session_factory, clock):
        async with session_factory() as session:
            chain = AuditChain(session, clock=clock)
            a1 = await chain.append("alice", _requested())
            b1 = await chain.append("bob", _requested())
            clock.advance(seconds=1)
            a2 = await chain.append("alice", ApprovalGranted(approved_by="user"))
            await session.commit()

        assert (a1.sequence, a2.sequence, b1.sequence) == (1, 2, 1)
        assert a2.previous_hash == a1.event_hash
        assert b1.previous_hash == GENESIS_HASH

    async def test_get_entries_newest_first_and_filtered(self, session_factory, clock):
        async with session_factory() as session:
            chain = AuditChain(session, clock=clock)
            await chain.append("alice", _requested())
            await chain.append("alice", CountdownCancelled())
            await chain.append("alice", ApprovalGranted(approved_by="auto"))
            await session.commit()

            entries = await chain.get_entries("alice")
            assert [e.sequence for e in entries] == [3, 2, 1]
            granted = await chain.get_entries("alice", event_type="approval_granted")
            assert len(granted) == 1
            assert await chain.count_entries("alice") == 3
            assert await chain.count_entries("alice", event_type="countdown_cancelled") == 1
            assert await chain.count_entries("nobody") == 0


class TestVerify:
    async def test_empty_chain_is_valid(self, session_factory):
        async with session_factory() as session:
            result = await AuditChain(session).verify_chain("nobody")
        assert result == {"valid": True, "entries_checked": 0, "first_invalid": None, "reason": None}

    async def test_intact_chain_verifies(self, session_factory, clock):
        async with session_factory() as session:
            chain = AuditChain(session, clock=clock)
            for _ in range(4):
                await chain.append("alice", _requested())
                clock.advance(milliseconds=250)
            await session.commit()

        async with session_factory() as session:
            result = await AuditChain(session).verify_chain("alice")
        assert result["valid"] is True
        assert result["entries_checked"] == 4

    async def test_tampered_payload_detected(self, session_factory, clock):
        async with session_factory() as session:
            chain = AuditChain(session, clock=clock)
            await chain.append("alice", _requested())
            second = await chain.append("alice", ApprovalGranted(approved_by="user"))
            await chain.append("alice", CountdownCancelled())
            await session.commit()

            await session.execute(
                update(AuditLog)
                .where(AuditLog.event_id == second.event_id)
                .values(event_data={"event_type": "approval_granted", "approved_by": "auto"})
            )
            await session.commit()

        async with session_factory() as session:
            result = await AuditChain(session).verify_chain("alice")
        assert result["valid"] is False
        assert result["first_invalid"] == second.event_id
        assert result["entries_checked"] == 2
        assert "tampered" in result["reason"]

    async def test_broken_link_detected(self, session_factory, clock):
        async with session_factory() as session:
            chain = AuditChain(session, clock=clock)
            await chain.append("alice", _requested())
            second = await chain.append("alice", CountdownCancelled())
            await session.commit()

            await session.execute(
                update(AuditLog)
                .where(AuditLog.event_id == second.event_id)
                .values(previous_hash="0" * 64)
            )
            await session.commit()

        async with session_factory() as session:
            result = await AuditChain(session).verify_chain("alice")
        assert result["valid"] is False
        assert result["reason"] == "previous_hash mismatch"


class TestEvents:
    def test_parse_event_round_trips_stored_data(self):
        event = SettlementConfirmed(settlement_signature="sig", confirmation_time_ms=90, slot=7)
        parsed = parse_event(event.model_dump(mode="json"))
        assert isinstance(parsed, SettlementConfirmed)
        assert parsed.slot == 7

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            ApprovalGranted(approved_by="user", extra="nope")

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_event({"event_type": "teleported"})
