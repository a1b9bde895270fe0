"""Webhook delivery of bus events.

Outbound webhooks are signed with HMAC-SHA256 so receivers can verify
payload authenticity.

Headers added to outbound webhooks:
  X-Automation-Signature: sha256=<hex_digest>
  X-Automation-Timestamp: <unix_timestamp>
  X-Automation-Delivery: <unique_delivery_id>

Verification:
  1. Check timestamp is within tolerance (default: 5 minutes)
  2. Compute HMAC-SHA256 over: f"{timestamp}.{body}"
  3. Compare with X-Automation-Signature in constant time
"""

import hashlib
import hmac
import json
import secrets
import time
from typing import Iterable, Optional
from uuid import uuid4

import httpx
import structlog

from events.bus import Event

logger = structlog.get_logger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300

SIGNATURE_HEADER = "X-Automation-Signature"
TIMESTAMP_HEADER = "X-Automation-Timestamp"
DELIVERY_HEADER = "X-Automation-Delivery"


def _digest(payload: bytes, secret: str, ts: int) -> str:
    return hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()


def sign_payload(
    payload: bytes,
    secret: str,
    timestamp: Optional[int] = None,
    delivery_id: Optional[str] = None,
) -> dict[str, str]:
    """Sign a webhook body and return the headers to send with it."""
    ts = timestamp or int(time.time())
    return {
        SIGNATURE_HEADER: f"sha256={_digest(payload, secret, ts)}",
        TIMESTAMP_HEADER: str(ts),
        DELIVERY_HEADER: delivery_id or str(uuid4()),
        "Content-Type": "application/json",
    }


def verify_signature(
    payload: bytes,
    secret: str,
    signature_header: str,
    timestamp_header: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[int] = None,
) -> bool:
    """True if the signature matches and the timestamp is within tolerance."""
    try:
        ts = int(timestamp_header)
    except (ValueError, TypeError):
        return False

    current = now if now is not None else int(time.time())
    if abs(current - ts) > tolerance:
        return False

    if not signature_header or not signature_header.startswith("sha256="):
        return False

    return hmac.compare_digest(_digest(payload, secret, ts), signature_header[7:])


def generate_webhook_secret() -> str:
    """Generate a cryptographically secure webhook signing secret."""
    return f"whsec_{secrets.token_urlsafe(32)}"


class WebhookDispatcher:
    """Event bus subscriber POSTing events as signed JSON.

    Failed deliveries are logged; they never raise into the bus.
    """

    def __init__(
        self,
        urls: Iterable[str],
        secret: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.urls = list(urls)
        self.secret = secret
        self.timeout = timeout
        self._transport = transport

    def _headers(self, body: bytes, delivery_id: str) -> dict[str, str]:
        if self.secret:
            return sign_payload(body, self.secret, delivery_id=delivery_id)
        return {DELIVERY_HEADER: delivery_id, "Content-Type": "application/json"}

    async def __call__(self, event: Event) -> int:
        """Deliver one event to every URL. Returns the number of 2xx answers."""
        if not self.urls:
            return 0
        body = json.dumps(event.to_dict(), default=str).encode()
        headers = self._headers(body, event.id)
        succeeded = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for url in self.urls:
                try:
                    response = await client.post(url, content=body, headers=headers)
                    if response.is_success:
                        succeeded += 1
                    else:
                        logger.warning(
                            "Webhook rejected",
                            url=url,
                            status_code=response.status_code,
                            event_type=event.type.value,
                        )
                except httpx.HTTPError as e:
                    logger.warning(
                        "Webhook delivery failed",
                        url=url,
                        event_type=event.type.value,
                        error=str(e) or type(e).__name__,
                    )
        return succeeded
