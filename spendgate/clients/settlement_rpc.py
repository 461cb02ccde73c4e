"""
Settlement network client (Solana JSON-RPC).

`submit` sends a fully signed transaction with preflight skipped and
returns its signature; `confirm` polls getSignatureStatuses until the
transaction is confirmed, errors, or the wait times out.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from uuid import uuid4

import httpx

from spendgate.config import settings
from spendgate.exceptions import ExternalFailure

logger = logging.getLogger(__name__)

CONFIRMED_LEVELS = frozenset({"confirmed", "finalized"})


@dataclass(frozen=True)
class Confirmation:
    confirmed: bool
    time_ms: int
    slot: int | None = None
    error: str | None = None


class SolanaRpcClient:
    def __init__(
        self,
        rpc_url: str | None = None,
        max_wait_ms: int | None = None,
        poll_interval_ms: int | None = None,
        timeout: float = 10.0,
    ):
        self.rpc_url = rpc_url or settings.settlement_rpc_url
        self.max_wait_ms = max_wait_ms or settings.settlement_max_wait_ms
        self.poll_interval_ms = poll_interval_ms or settings.settlement_poll_interval_ms
        self.timeout = timeout

    async def _call(self, client: httpx.AsyncClient, method: str, params: list):
        resp = await client.post(self.rpc_url, json={
            "jsonrpc": "2.0",
            "id": uuid4().hex,
            "method": method,
            "params": params,
        })
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            err = data["error"]
            raise ExternalFailure(f"RPC {method} error: {err.get('message', err)}")
        return data.get("result")

    async def submit(self, signed_transaction: str) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                signature = await self._call(client, "sendTransaction", [
                    signed_transaction,
                    {
                        "encoding": "base64",
                        "skipPreflight": True,
                        "maxRetries": 0,
                        "preflightCommitment": "confirmed",
                    },
                ])
        except httpx.HTTPError as exc:
            raise ExternalFailure(f"Settlement submit failed: {exc}") from exc
        if not signature:
            raise ExternalFailure("Settlement network returned no signature")
        return signature

    async def confirm(self, signature: str) -> Confirmation:
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            while elapsed_ms() < self.max_wait_ms:
                try:
                    result = await self._call(
                        client, "getSignatureStatuses",
                        [[signature], {"searchTransactionHistory": False}],
                    )
                except (httpx.HTTPError, ExternalFailure) as exc:
                    logger.debug("Status poll for %s failed: %s", signature, exc)
                    result = None

                status = ((result or {}).get("value") or [None])[0]
                if status:
                    if status.get("err"):
                        return Confirmation(
                            confirmed=False, time_ms=elapsed_ms(),
                            slot=status.get("slot"), error=f"Transaction failed: {status['err']}",
                        )
                    if status.get("confirmationStatus") in CONFIRMED_LEVELS:
                        return Confirmation(
                            confirmed=True, time_ms=elapsed_ms(), slot=status.get("slot"),
                        )

                await asyncio.sleep(self.poll_interval_ms / 1000)

        return Confirmation(confirmed=False, time_ms=elapsed_ms(), error="Confirmation timeout")
