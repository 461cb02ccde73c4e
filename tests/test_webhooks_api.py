"""Tests for webhook authentication and the signer / settlement receivers."""

import json
import time

import pytest

from spendgate.services.scheduler import TaskScheduler
from spendgate.services.settlement import SettlementService
from spendgate.services.signing_bridge import SUBMIT_SETTLEMENT_TASK, SigningBridge
from spendgate.services.stores import PlanStore
from spendgate.services.webhook_auth import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WebhookAuthError,
    sign_payload,
    verify_webhook,
)
from tests.conftest import completed_result, seed_plan


def signed_headers(body: bytes, timestamp: int | None = None) -> dict:
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return {
        "Content-Type": "application/json",
        TIMESTAMP_HEADER: ts,
        SIGNATURE_HEADER: sign_payload(ts, body),
    }


async def _awaiting_signature(session_factory, collaborators, clock) -> str:
    async with session_factory() as session:
        plan = await seed_plan(session)
        await PlanStore(session).set_plan_status(plan.plan_id, "approved")
        await session.commit()
        result = await SigningBridge(session, collaborators, clock=clock).execute_approved_plan(plan.plan_id)
        await session.commit()
    return result.request_id


class TestVerifyWebhook:
    def test_valid_signature(self):
        body = b'{"a":1}'
        verify_webhook("1700000000", sign_payload("1700000000", body, "s3cret"), body,
                       secret="s3cret", tolerance_seconds=300, now=1700000100)

    def test_wrong_secret(self):
        body = b"{}"
        with pytest.raises(WebhookAuthError, match="Invalid webhook signature"):
            verify_webhook("1700000000", sign_payload("1700000000", body, "other"), body,
                           secret="s3cret", now=1700000000)

    def test_body_tampered(self):
        sig = sign_payload("1700000000", b'{"amount":1}', "s3cret")
        with pytest.raises(WebhookAuthError):
            verify_webhook("1700000000", sig, b'{"amount":9}', secret="s3cret", now=1700000000)

    def test_stale_timestamp(self):
        body = b"{}"
        with pytest.raises(WebhookAuthError, match="tolerance"):
            verify_webhook("1700000000", sign_payload("1700000000", body, "s3cret"), body,
                           secret="s3cret", tolerance_seconds=300, now=1700000301)

    def test_missing_headers(self):
        with pytest.raises(WebhookAuthError, match="Missing"):
            verify_webhook(None, None, b"{}")

    def test_malformed_timestamp(self):
        with pytest.raises(WebhookAuthError, match="Malformed"):
            verify_webhook("yesterday", "abc", b"{}")


class TestSignerWebhook:
    async def test_completion_signs_and_schedules_settlement(
        self, api, session_factory, collaborators, clock, no_redis,
    ):
        request_id = await _awaiting_signature(session_factory, collaborators, clock)
        body = json.dumps({
            "activityId": "act-1",
            "activityType": "ACTIVITY_TYPE_SIGN_RAW_PAYLOAD_V2",
            "status": "ACTIVITY_STATUS_COMPLETED",
            "result": completed_result(),
        }).encode()

        resp = await api.post("/api/webhooks/signer", content=body, headers=signed_headers(body))
        assert resp.status_code == 200
        assert resp.json() == {"received": True, "handled": True}

        async with session_factory() as session:
            request = await SigningBridge(session).get_signing_request(request_id)
            tasks = await TaskScheduler(session).list_tasks(task_name=SUBMIT_SETTLEMENT_TASK)
        assert request.status == "signed"
        assert len(tasks) == 1
        assert no_redis  # worker woken after commit

    async def test_redelivery_acknowledged(self, api, session_factory, collaborators, clock):
        await _awaiting_signature(session_factory, collaborators, clock)
        body = json.dumps({
            "activityId": "act-1", "status": "ACTIVITY_STATUS_COMPLETED", "result": completed_result(),
        }).encode()
        for _ in range(2):
            resp = await api.post("/api/webhooks/signer", content=body, headers=signed_headers(body))
            assert resp.status_code == 200

        async with session_factory() as session:
            tasks = await TaskScheduler(session).list_tasks(task_name=SUBMIT_SETTLEMENT_TASK)
        assert len(tasks) == 1

    async def test_unknown_activity_acknowledged(self, api):
        body = json.dumps({"activityId": "act-404", "status": "ACTIVITY_STATUS_FAILED"}).encode()
        resp = await api.post("/api/webhooks/signer", content=body, headers=signed_headers(body))
        assert resp.status_code == 200
        assert resp.json()["handled"] is False

    async def test_bad_signature_rejected(self, api):
        body = json.dumps({"activityId": "act-1", "status": "ACTIVITY_STATUS_COMPLETED"}).encode()
        headers = signed_headers(body)
        headers[SIGNATURE_HEADER] = "0" * 64
        resp = await api.post("/api/webhooks/signer", content=body, headers=headers)
        assert resp.status_code == 401

    async def test_replayed_delivery_rejected(self, api):
        body = json.dumps({"activityId": "act-1", "status": "ACTIVITY_STATUS_COMPLETED"}).encode()
        resp = await api.post(
            "/api/webhooks/signer", content=body,
            headers=signed_headers(body, timestamp=int(time.time()) - 3600),
        )
        assert resp.status_code == 401

    async def test_malformed_payload_rejected(self, api):
        body = json.dumps({"status": "ACTIVITY_STATUS_COMPLETED"}).encode()
        resp = await api.post("/api/webhooks/signer", content=body, headers=signed_headers(body))
        assert resp.status_code == 422

    async def test_handler_error_still_acknowledged(self, api, monkeypatch):
        async def broken(self, *args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(SigningBridge, "handle_activity_completion", broken)
        body = json.dumps({"activityId": "act-1", "status": "ACTIVITY_STATUS_COMPLETED"}).encode()
        resp = await api.post("/api/webhooks/signer", content=body, headers=signed_headers(body))
        assert resp.status_code == 200
        assert resp.json() == {"received": True, "handled": False}


class TestSettlementWebhook:
    async def test_confirmation_finalizes(self, api, session_factory, collaborators, clock):
        request_id = await _awaiting_signature(session_factory, collaborators, clock)
        async with session_factory() as session:
            bridge = SigningBridge(session, collaborators, clock=clock)
            await bridge.handle_activity_completion("act-1", "ACTIVITY_STATUS_COMPLETED", completed_result())
            await SettlementService(session, collaborators, clock=clock)._swap(
                request_id, ("signed",), status="submitted", settlement_signature="net-sig-1",
            )
            await session.commit()

        body = json.dumps({"signature": "net-sig-1", "status": "confirmed", "slot": 12}).encode()
        resp = await api.post("/api/webhooks/settlement", content=body, headers=signed_headers(body))
        assert resp.status_code == 200
        assert resp.json()["handled"] is True

        async with session_factory() as session:
            request = await SigningBridge(session).get_signing_request(request_id)
        assert request.status == "confirmed"

        # A late failure report for the same transaction changes nothing
        body = json.dumps({"signature": "net-sig-1", "status": "failed", "error": "late"}).encode()
        resp = await api.post("/api/webhooks/settlement", content=body, headers=signed_headers(body))
        assert resp.json()["handled"] is False

    async def test_webhooks_need_no_bearer_token(self, api):
        body = json.dumps({"signature": "unknown", "status": "confirmed"}).encode()
        resp = await api.post("/api/webhooks/settlement", content=body, headers=signed_headers(body))
        assert resp.status_code == 200
        assert resp.json()["handled"] is False
