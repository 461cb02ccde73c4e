"""
Turnkey signer client.

Requests are authenticated with an API-key stamp: the exact JSON body is
signed with the organization's P-256 API private key (ECDSA/SHA-256, DER,
hex) and sent base64url-encoded in the X-Stamp header together with the
public key. Signing itself is asynchronous: the submit call returns an
activity whose final status arrives later through the signer webhook.
"""

import base64
import json
import logging
import time
from dataclasses import dataclass, field

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from spendgate.config import settings
from spendgate.exceptions import ExternalFailure
from spendgate.models import WalletConfig

logger = logging.getLogger(__name__)

SIGN_RAW_PAYLOAD = "ACTIVITY_TYPE_SIGN_RAW_PAYLOAD_V2"
STAMP_SCHEME = "SIGNATURE_SCHEME_TK_API_P256"


@dataclass(frozen=True)
class SignerActivity:
    activity_id: str
    activity_type: str
    status: str
    result: dict | None = field(default=None)


def stamp_body(body: str, api_public_key: str, api_private_key: str) -> str:
    """Build the X-Stamp header value for `body`."""
    private_key = ec.derive_private_key(int(api_private_key, 16), ec.SECP256R1())
    signature = private_key.sign(body.encode(), ec.ECDSA(hashes.SHA256()))
    stamp = {
        "publicKey": api_public_key,
        "scheme": STAMP_SCHEME,
        "signature": signature.hex(),
    }
    raw = json.dumps(stamp, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TurnkeySigner:
    def __init__(
        self,
        base_url: str | None = None,
        api_public_key: str | None = None,
        api_private_key: str | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = (base_url or settings.signer_base_url).rstrip("/")
        self.api_public_key = api_public_key or settings.signer_api_public_key
        self.api_private_key = api_private_key or settings.signer_api_private_key
        self.timeout = timeout

    async def sign_raw_payload(
        self, unsigned_transaction: str, wallet: WalletConfig,
    ) -> SignerActivity:
        if not self.api_private_key:
            raise ExternalFailure("Signer API key is not configured")

        payload_hex = base64.b64decode(unsigned_transaction).hex()
        body = json.dumps({
            "type": SIGN_RAW_PAYLOAD,
            "timestampMs": str(int(time.time() * 1000)),
            "organizationId": wallet.sub_organization_id,
            "parameters": {
                "signWith": wallet.wallet_address,
                "payload": payload_hex,
                "encoding": "PAYLOAD_ENCODING_HEXADECIMAL",
                "hashFunction": "HASH_FUNCTION_NOT_APPLICABLE",
            },
        }, separators=(",", ":"))

        headers = {
            "Content-Type": "application/json",
            "X-Stamp": stamp_body(body, self.api_public_key, self.api_private_key),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/public/v1/submit/sign_raw_payload",
                    content=body,
                    headers=headers,
                )
                resp.raise_for_status()
                activity = resp.json().get("activity") or {}
        except httpx.HTTPError as exc:
            logger.warning("Signer request failed for %s: %s", wallet.wallet_address, exc)
            raise ExternalFailure(f"Signer error: {exc}") from exc

        if not activity.get("id"):
            raise ExternalFailure("Signer returned no activity id")
        return SignerActivity(
            activity_id=activity["id"],
            activity_type=activity.get("type", SIGN_RAW_PAYLOAD),
            status=activity.get("status", "ACTIVITY_STATUS_PENDING"),
            result=activity.get("result"),
        )
