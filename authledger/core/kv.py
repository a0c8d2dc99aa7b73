"""
AuthLedger — core/kv.py
─────────────────────────────────────────────────────────────────
Fast key-value store, kept apart from the SQLite file so lock
contention never blocks unrelated requests.

  RedisStore   → deployments (REDIS_URL set)
  MemoryStore  → dev / tests (single process)

Users:
  idempotency gate   lock:{key}, idempotency:{key}
  google oauth       oauth:state:{state}   (one-time)
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger("authledger.kv")


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


# ─────────────────────────────────────────────
# In-memory
# ─────────────────────────────────────────────
class MemoryStore:
    """
    asyncio-safe dict with per-key expiry.

    Only correct inside one process; multi-worker deployments must
    point REDIS_URL at a shared Redis.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        async with self._lock:
            self._data[key] = (value, time.monotonic() + ttl)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, time.monotonic() + ttl_ms / 1000)
            return True

    async def pop(self, key: str) -> Optional[str]:
        async with self._lock:
            value = self._live(key)
            self._data.pop(key, None)
            return value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def close(self) -> None:
        self._data.clear()


# ─────────────────────────────────────────────
# Redis
# ─────────────────────────────────────────────
class RedisStore:
    def __init__(self, url: str, client: Optional[aioredis.Redis] = None):
        self.url   = url
        self.redis = client or aioredis.from_url(
            url,
            decode_responses       = True,
            socket_timeout         = 5,
            socket_connect_timeout = 5,
        )

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self.redis.setex(key, ttl, value)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        # SET key value NX PX ttl → single atomic acquire
        return bool(await self.redis.set(key, value, nx=True, px=ttl_ms))

    async def pop(self, key: str) -> Optional[str]:
        return await self.redis.getdel(key)

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)

    async def close(self) -> None:
        await self.redis.aclose()


def build_store(redis_url: str) -> KeyValueStore:
    if redis_url:
        logger.info("KV store: redis")
        return RedisStore(redis_url)
    logger.warning("REDIS_URL not set, using in-process KV store (single worker only)")
    return MemoryStore()
