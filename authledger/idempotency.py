"""
AuthLedger — idempotency.py
─────────────────────────────────────────────────────────────────
At-most-once execution per client-supplied Idempotency-Key.

Per key:  no-record ──lock──▶ locked ──done──▶ completed (cached)

  1. Cached result for K?          → replay it, no side effects
  2. SET lock:K NX PX 30000 wins   → run, cache result 1h, release
  3. Lock held by someone else     → wait 100ms, re-check cache once,
                                     else 409 "retry shortly"

The lock is released on every exit path (success, error, cancelled
request). Its TTL only matters when the holder dies mid-operation.
Failed operations are never cached: a retry runs them again.

Usage:
    gate = IdempotencyGate(store)
    body = await gate.run(key, lambda: do_credit(...))
─────────────────────────────────────────────────────────────────
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

from fastapi import Header

from authledger.core.errors import BadRequestError, ConflictError
from authledger.core.kv import KeyValueStore

logger = logging.getLogger("authledger.idempotency")

LOCK_TTL_MS   = 30_000
RESULT_TTL_S  = 3_600
RETRY_WAIT_MS = 100


class IdempotencyGate:
    def __init__(
        self,
        store: KeyValueStore,
        lock_ttl_ms: int = LOCK_TTL_MS,
        result_ttl: int = RESULT_TTL_S,
        retry_wait_ms: int = RETRY_WAIT_MS,
    ):
        self.store         = store
        self.lock_ttl_ms   = lock_ttl_ms
        self.result_ttl    = result_ttl
        self.retry_wait_ms = retry_wait_ms

    @staticmethod
    def lock_key(key: str) -> str:
        return f"lock:{key}"

    @staticmethod
    def result_key(key: str) -> str:
        return f"idempotency:{key}"

    async def cached(self, key: str) -> Optional[dict]:
        raw = await self.store.get(self.result_key(key))
        return json.loads(raw) if raw is not None else None

    async def run(self, key: str, operation: Callable[[], Awaitable[dict]]) -> dict:
        """
        Execute `operation` at most once for `key`.
        The operation's return value must be JSON-serializable; it is
        what every later caller with the same key receives.
        """
        existing = await self.cached(key)
        if existing is not None:
            logger.info(f"🔄 [{key}] Returning cached result")
            return existing

        acquired = await self.store.set_if_absent(self.lock_key(key), "1", self.lock_ttl_ms)
        if not acquired:
            logger.info(f"⏳ [{key}] Lock not acquired, waiting for result...")
            await asyncio.sleep(self.retry_wait_ms / 1000)

            existing = await self.cached(key)
            if existing is not None:
                logger.info(f"🔄 [{key}] Found result after waiting")
                return existing

            logger.warning(f"❌ [{key}] Still processing elsewhere, returning conflict")
            raise ConflictError("Request already being processed. Please retry shortly.")

        logger.info(f"🔒 [{key}] Lock acquired, proceeding with operation")
        try:
            result = await operation()
            await self.store.set(self.result_key(key), json.dumps(result), self.result_ttl)
            return result
        finally:
            try:
                await self.store.delete(self.lock_key(key))
            except Exception as e:
                # lock still expires on its own TTL
                logger.error(f"Failed to release idempotency lock [{key}]: {e!r}")


# ─────────────────────────────────────────────
# FastAPI dependency
# ─────────────────────────────────────────────
async def require_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> str:
    if not idempotency_key or not idempotency_key.strip():
        raise BadRequestError("Idempotency-Key header required")
    return idempotency_key.strip()
