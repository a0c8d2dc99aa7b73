"""
AuthLedger — webhooks.py
─────────────────────────────────────────────────────────────────
Signed, fire-and-forget notifications to external subscribers.

Every event is POSTed to every URL in WEBHOOK_URLS:

    POST {url}
    Content-Type: application/json
    X-Webhook-Signature: hex(HMAC-SHA256(WEBHOOK_SECRET, body))

    {"event":"wallet.credited","data":{...}}

Dispatch happens AFTER the ledger / referral change has committed.
A failed delivery is logged and nothing else: it never reverses the
change and never reaches the original caller. No retry queue.

Events:
  wallet.credited   {userId, currency, amount, transactionId, referenceId, timestamp}
  wallet.debited    same shape, amount is the (positive) debited amount
  referral.created  {referrerId, referredUserId, timestamp}
─────────────────────────────────────────────────────────────────
"""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Optional, Sequence, Set

import httpx

logger = logging.getLogger("authledger.webhooks")

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMEOUT_S        = 10.0

EVENT_WALLET_CREDITED  = "wallet.credited"
EVENT_WALLET_DEBITED   = "wallet.debited"
EVENT_REFERRAL_CREATED = "referral.created"


# ─────────────────────────────────────────────
# Signing
# ─────────────────────────────────────────────
def serialize(event: str, data: dict) -> bytes:
    """Compact JSON: the exact bytes that get signed and sent."""
    return json.dumps({"event": event, "data": data}, separators=(",", ":")).encode()


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """For subscribers: constant-time check of X-Webhook-Signature."""
    return hmac.compare_digest(sign(body, secret), signature or "")


# ─────────────────────────────────────────────
# Notifier
# ─────────────────────────────────────────────
class WebhookNotifier:
    def __init__(
        self,
        urls: Sequence[str],
        secret: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.urls    = tuple(urls)
        self.secret  = secret
        self._client = client
        self._tasks: Set[asyncio.Task] = set()

        if self.urls and not self.secret:
            logger.warning("⚠️  WEBHOOK_URLS set but WEBHOOK_SECRET is empty, deliveries are unsigned")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=TIMEOUT_S)
        return self._client

    def emit(self, event: str, data: dict) -> Optional[asyncio.Task]:
        """
        Launch delivery as a detached task and return immediately.
        The task reference is held until it finishes so it is not
        garbage-collected mid-flight.
        """
        if not self.urls:
            return None
        task = asyncio.create_task(self.deliver(event, data), name=f"webhook:{event}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Webhook task {task.get_name()} crashed: {exc!r}")

    async def deliver(self, event: str, data: dict):
        """Send one event to all subscribers in parallel; never raises."""
        if not self.urls:
            return
        body    = serialize(event, data)
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign(body, self.secret)

        results = await asyncio.gather(
            *(self._send(url, body, headers) for url in self.urls),
            return_exceptions=True,
        )
        for url, result in zip(self.urls, results):
            if isinstance(result, BaseException):
                logger.error(f"Webhook crashed [{url}]: {result!r}")
        delivered = sum(1 for r in results if r is True)
        logger.info(f"Webhook {event} delivered to {delivered}/{len(self.urls)} subscribers")

    async def _send(self, url: str, body: bytes, headers: dict) -> bool:
        try:
            resp = await self.client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Webhook error [{url}]: {e!r}")
            return False
        if resp.is_success:
            return True
        logger.error(f"Webhook failed [{url}]: {resp.status_code} {resp.text[:200]}")
        return False

    async def drain(self):
        """Wait for in-flight deliveries (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self):
        await self.drain()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
