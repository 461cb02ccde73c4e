"""
Inbound webhook authentication.

Senders sign `"{timestamp}.{raw body}"` with HMAC-SHA256 under the shared
webhook secret and send the hex digest in X-Webhook-Signature alongside
X-Webhook-Timestamp (unix seconds). Deliveries outside the tolerance
window are refused to limit replay.
"""

import hashlib
import hmac
import time

from spendgate.config import settings

TIMESTAMP_HEADER = "X-Webhook-Timestamp"
SIGNATURE_HEADER = "X-Webhook-Signature"


class WebhookAuthError(Exception):
    pass


def sign_payload(timestamp: str, body: bytes, secret: str | None = None) -> str:
    key = (secret or settings.webhook_secret).encode()
    message = timestamp.encode() + b"." + body
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def verify_webhook(
    timestamp: str | None,
    signature: str | None,
    body: bytes,
    *,
    secret: str | None = None,
    tolerance_seconds: int | None = None,
    now: float | None = None,
) -> None:
    """Raise WebhookAuthError unless the delivery is fresh and correctly signed."""
    if not timestamp or not signature:
        raise WebhookAuthError("Missing webhook signature headers")
    try:
        sent_at = int(timestamp)
    except ValueError:
        raise WebhookAuthError("Malformed webhook timestamp")

    tolerance = settings.webhook_tolerance_seconds if tolerance_seconds is None else tolerance_seconds
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance:
        raise WebhookAuthError("Webhook timestamp outside tolerance")

    expected = sign_payload(timestamp, body, secret)
    if not hmac.compare_digest(signature.strip().lower(), expected):
        raise WebhookAuthError("Invalid webhook signature")
