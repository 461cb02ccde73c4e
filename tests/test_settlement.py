"""Tests for settlement submission, confirmation and webhook-driven finalization."""

import base64

from sqlalchemy import select

from spendgate.clients import Confirmation
from spendgate.models import SettlementRecord
from spendgate.services.audit_chain import AuditChain
from spendgate.services.settlement import SettlementService, combine_transaction_with_signature
from spendgate.services.signing_bridge import SigningBridge
from spendgate.services.stores import IntentStore, PlanStore
from spendgate.tasks import run_sweeps
from tests.conftest import USER_ID, completed_result, drain, network_down, seed_plan


async def _signed_request(session_factory, collaborators, clock):
    """Seed a plan and drive it to a signed request with a pending settlement task."""
    async with session_factory() as session:
        plan = await seed_plan(session)
        await PlanStore(session).set_plan_status(plan.plan_id, "approved")
        await session.commit()

        bridge = SigningBridge(session, collaborators, clock=clock)
        result = await bridge.execute_approved_plan(plan.plan_id)
        await bridge.handle_activity_completion("act-1", "ACTIVITY_STATUS_COMPLETED", completed_result())
        await session.commit()
    return plan, result.request_id


async def _load(session_factory, plan, request_id):
    async with session_factory() as session:
        request = await SigningBridge(session).get_signing_request(request_id)
        stored_plan = await PlanStore(session).get_plan(plan.plan_id)
        intent = await IntentStore(session).get_intent(plan.intent_id)
        records = list((await session.execute(select(SettlementRecord))).scalars())
        return request, stored_plan, intent, records


class TestCombine:
    def test_signature_section_prefixed(self):
        unsigned = base64.b64encode(b"msg").decode()
        combined = base64.b64decode(combine_transaction_with_signature(unsigned, "ff" * 64))
        assert combined[0] == 1
        assert combined[1:65] == b"\xff" * 64
        assert combined[65:] == b"msg"


class TestSubmit:
    async def test_happy_path_confirms(self, session_factory, collaborators, clock, runner):
        plan, request_id = await _signed_request(session_factory, collaborators, clock)
        await drain(runner)

        request, stored_plan, intent, records = await _load(session_factory, plan, request_id)
        assert request.status == "confirmed"
        assert request.settlement_signature == "settle-sig-1"
        assert request.confirmation_time_ms == 120
        assert intent.status == "completed"
        assert intent.settlement_signature == "settle-sig-1"
        assert stored_plan.status == "completed"
        assert len(records) == 1
        assert records[0].status == "confirmed"
        assert records[0].within_target is True
        assert records[0].slot == 4242

        async with session_factory() as session:
            assert (await AuditChain(session).verify_chain(USER_ID))["valid"]
            latest = (await AuditChain(session).get_entries(USER_ID, limit=2))
        assert [e.event_type for e in latest] == ["settlement_confirmed", "settlement_submitted"]

    async def test_slow_confirmation_is_outside_target(self, session_factory, collaborators, clock, runner):
        collaborators.settlement.confirmation = Confirmation(confirmed=True, time_ms=900, slot=1)
        plan, request_id = await _signed_request(session_factory, collaborators, clock)
        await drain(runner)

        _, _, _, records = await _load(session_factory, plan, request_id)
        assert records[0].within_target is False

    async def test_submit_runs_once(self, session_factory, collaborators, clock):
        plan, request_id = await _signed_request(session_factory, collaborators, clock)
        for _ in range(2):
            async with session_factory() as session:
                await SettlementService(session, collaborators, clock=clock).submit_signed_transaction(request_id)
                await session.commit()
        assert len(collaborators.settlement.submitted) == 1

    async def test_network_failure_rolls_back(self, session_factory, collaborators, clock):
        collaborators.settlement.submit_error = network_down()
        plan, request_id = await _signed_request(session_factory, collaborators, clock)
        async with session_factory() as session:
            ok = await SettlementService(session, collaborators, clock=clock).submit_signed_transaction(request_id)
            await session.commit()
        assert ok is False

        request, stored_plan, intent, records = await _load(session_factory, plan, request_id)
        assert request.status == "failed"
        assert "connection refused" in request.error
        assert intent.status == "failed"
        assert intent.error_code == "SETTLEMENT_FAILED"
        assert stored_plan.status == "failed"
        assert [r.status for r in records] == ["failed"]

    async def test_unexpected_error_still_fails_request(self, session_factory, collaborators, clock):
        collaborators.settlement.submit_error = RuntimeError("worker killed mid-submit")
        plan, request_id = await _signed_request(session_factory, collaborators, clock)
        async with session_factory() as session:
            ok = await SettlementService(session, collaborators, clock=clock).submit_signed_transaction(request_id)
            await session.commit()
        assert ok is False

        request, stored_plan, intent, records = await _load(session_factory, plan, request_id)
        assert request.status == "failed"
        assert request.error == "worker killed mid-submit"
        assert intent.status == "failed"
        assert intent.error_code == "SETTLEMENT_FAILED"
        assert stored_plan.status == "failed"
        assert [r.status for r in records] == ["failed"]

    async def test_confirmation_timeout_rolls_back(self, session_factory, collaborators, clock):
        collaborators.settlement.confirmation = Confirmation(
            confirmed=False, time_ms=30000, error="Confirmation timeout",
        )
        plan, request_id = await _signed_request(session_factory, collaborators, clock)
        async with session_factory() as session:
            await SettlementService(session, collaborators, clock=clock).submit_signed_transaction(request_id)
            await session.commit()

        request, _, intent, records = await _load(session_factory, plan, request_id)
        assert request.status == "failed"
        assert request.settlement_signature == "settle-sig-1"
        assert intent.error_message == "Confirmation timeout"
        assert records[0].settlement_signature == "settle-sig-1"

    async def test_unsigned_request_not_submitted(self, session_factory, collaborators, clock):
        async with session_factory() as session:
            ok = await SettlementService(session, collaborators, clock=clock).submit_signed_transaction("sign_missing")
        assert ok is False
        assert collaborators.settlement.submitted == []


class TestNotifications:
    async def _submitted(self, session_factory, collaborators, clock):
        plan, request_id = await _signed_request(session_factory, collaborators, clock)
        async with session_factory() as session:
            service = SettlementService(session, collaborators, clock=clock)
            await service._swap(request_id, ("signed",), status="submitted", settlement_signature="sig-abc")
            await session.commit()
        return plan, request_id

    async def test_confirmed_notification_finalizes(self, session_factory, collaborators, clock):
        plan, request_id = await self._submitted(session_factory, collaborators, clock)
        clock.advance(milliseconds=80)
        async with session_factory() as session:
            moved = await SettlementService(session, collaborators, clock=clock).handle_settlement_notification(
                "sig-abc", "finalized", slot=99,
            )
            await session.commit()
        assert moved

        request, stored_plan, intent, records = await _load(session_factory, plan, request_id)
        assert request.status == "confirmed"
        assert request.confirmation_time_ms == 80
        assert intent.status == "completed"
        assert stored_plan.status == "completed"
        assert records[0].slot == 99

    async def test_failed_notification_rolls_back(self, session_factory, collaborators, clock):
        plan, request_id = await self._submitted(session_factory, collaborators, clock)
        async with session_factory() as session:
            moved = await SettlementService(session, collaborators, clock=clock).handle_settlement_notification(
                "sig-abc", "dropped",
            )
            await session.commit()
        assert moved

        request, _, intent, _ = await _load(session_factory, plan, request_id)
        assert request.status == "failed"
        assert request.error == "Settlement dropped"
        assert intent.error_code == "SETTLEMENT_FAILED"

    async def test_second_notification_is_noop(self, session_factory, collaborators, clock):
        plan, request_id = await self._submitted(session_factory, collaborators, clock)
        async with session_factory() as session:
            service = SettlementService(session, collaborators, clock=clock)
            assert await service.handle_settlement_notification("sig-abc", "confirmed")
            await session.commit()
            assert await service.handle_settlement_notification("sig-abc", "failed", error="late") is False
            await session.commit()

        request, _, intent, records = await _load(session_factory, plan, request_id)
        assert request.status == "confirmed"
        assert intent.status == "completed"
        assert len(records) == 1

    async def test_intermediate_and_unknown_notifications_ignored(self, session_factory, collaborators, clock):
        await self._submitted(session_factory, collaborators, clock)
        async with session_factory() as session:
            service = SettlementService(session, collaborators, clock=clock)
            assert await service.handle_settlement_notification("sig-abc", "processed") is False
            assert await service.handle_settlement_notification("sig-nope", "confirmed") is False


class TestStuckSubmissions:
    async def _stranded(self, session_factory, collaborators, clock, **values):
        """A request a worker moved to submitted and then never finished."""
        plan, request_id = await _signed_request(session_factory, collaborators, clock)
        async with session_factory() as session:
            await SettlementService(session, collaborators, clock=clock)._swap(
                request_id, ("signed",), status="submitted", **values,
            )
            await session.commit()
        return plan, request_id

    async def _sweep(self, session_factory, collaborators, clock) -> dict:
        async with session_factory() as session:
            counts = await run_sweeps(session, collaborators, clock=clock)
            await session.commit()
        return counts

    async def test_unrecorded_submission_rolled_back(self, session_factory, collaborators, clock):
        plan, request_id = await self._stranded(session_factory, collaborators, clock)
        async with session_factory() as session:
            rerun = await SettlementService(session, collaborators, clock=clock).submit_signed_transaction(request_id)
        assert rerun is False

        clock.advance(seconds=301)
        counts = await self._sweep(session_factory, collaborators, clock)
        assert counts["settlements_recovered"] == 1

        request, stored_plan, intent, records = await _load(session_factory, plan, request_id)
        assert request.status == "failed"
        assert intent.status == "failed"
        assert intent.error_code == "SETTLEMENT_FAILED"
        assert stored_plan.status == "failed"
        assert [r.status for r in records] == ["failed"]
        assert collaborators.settlement.submitted == []

    async def test_recorded_submission_confirmed(self, session_factory, collaborators, clock):
        plan, request_id = await self._stranded(
            session_factory, collaborators, clock, settlement_signature="net-sig-9",
        )
        clock.advance(seconds=301)
        counts = await self._sweep(session_factory, collaborators, clock)
        assert counts["settlements_recovered"] == 1
        assert collaborators.settlement.confirmed_calls == ["net-sig-9"]

        request, stored_plan, intent, records = await _load(session_factory, plan, request_id)
        assert request.status == "confirmed"
        assert intent.status == "completed"
        assert intent.settlement_signature == "net-sig-9"
        assert stored_plan.status == "completed"
        assert records[0].slot == 4242

    async def test_recent_submission_left_alone(self, session_factory, collaborators, clock):
        plan, request_id = await self._stranded(session_factory, collaborators, clock)
        clock.advance(seconds=10)
        counts = await self._sweep(session_factory, collaborators, clock)
        assert counts["settlements_recovered"] == 0

        request, _, _, records = await _load(session_factory, plan, request_id)
        assert request.status == "submitted"
        assert records == []

    async def test_unreachable_network_retried_next_sweep(self, session_factory, collaborators, clock):
        plan, request_id = await self._stranded(
            session_factory, collaborators, clock, settlement_signature="net-sig-9",
        )
        collaborators.settlement.confirm_error = network_down()
        clock.advance(seconds=301)
        assert (await self._sweep(session_factory, collaborators, clock))["settlements_recovered"] == 0
        request, _, _, _ = await _load(session_factory, plan, request_id)
        assert request.status == "submitted"

        collaborators.settlement.confirm_error = None
        assert (await self._sweep(session_factory, collaborators, clock))["settlements_recovered"] == 1
        request, _, _, _ = await _load(session_factory, plan, request_id)
        assert request.status == "confirmed"
