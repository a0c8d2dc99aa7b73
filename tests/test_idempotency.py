import asyncio

import pytest

from authledger.core.errors import ConflictError
from authledger.core.kv import MemoryStore
from authledger.idempotency import IdempotencyGate


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gate(store):
    return IdempotencyGate(store, lock_ttl_ms=30_000, result_ttl=3600, retry_wait_ms=20)


class Counter:
    def __init__(self, result=None, delay: float = 0):
        self.calls  = 0
        self.result = result or {"ok": True}
        self.delay  = delay

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return {**self.result, "call": self.calls}


async def test_runs_once_then_replays(gate, store):
    op = Counter()

    first  = await gate.run("k1", op)
    second = await gate.run("k1", op)

    assert op.calls == 1
    assert first == second == {"ok": True, "call": 1}
    assert await store.get("lock:k1") is None
    assert await store.get("idempotency:k1") is not None


async def test_different_keys_are_independent(gate):
    op = Counter()
    await gate.run("a", op)
    await gate.run("b", op)
    assert op.calls == 2


async def test_in_flight_duplicate_gets_conflict(gate):
    started, release = asyncio.Event(), asyncio.Event()

    async def slow():
        started.set()
        await release.wait()
        return {"done": True}

    first = asyncio.create_task(gate.run("k", slow))
    await started.wait()

    with pytest.raises(ConflictError, match="already being processed"):
        await gate.run("k", Counter())

    release.set()
    assert await first == {"done": True}
    assert await gate.run("k", Counter()) == {"done": True}


async def test_waiter_picks_up_result_finished_during_wait(store):
    gate = IdempotencyGate(store, retry_wait_ms=300)
    op = Counter(delay=0.05)

    first, second = await asyncio.gather(gate.run("k", op), gate.run("k", op))

    assert op.calls == 1
    assert first == second


async def test_concurrent_burst_executes_at_most_once(gate):
    op = Counter(delay=0.01)

    results = await asyncio.gather(*(gate.run("burst", op) for _ in range(10)), return_exceptions=True)

    assert op.calls == 1
    values = [r for r in results if isinstance(r, dict)]
    assert values and all(v == {"ok": True, "call": 1} for v in values)
    assert all(isinstance(r, (dict, ConflictError)) for r in results)


async def test_failure_releases_lock_and_is_not_cached(gate, store):
    async def boom():
        raise RuntimeError("storage down")

    with pytest.raises(RuntimeError):
        await gate.run("k", boom)

    assert await store.get("lock:k") is None
    assert await store.get("idempotency:k") is None

    op = Counter()
    assert await gate.run("k", op) == {"ok": True, "call": 1}


async def test_cancellation_releases_lock(gate, store):
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(gate.run("k", hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await store.get("lock:k") is None


async def test_stale_lock_expires(store):
    gate = IdempotencyGate(store, retry_wait_ms=10)
    assert await store.set_if_absent("lock:k", "1", ttl_ms=50)

    with pytest.raises(ConflictError):
        await gate.run("k", Counter())

    await asyncio.sleep(0.08)
    assert await gate.run("k", Counter()) == {"ok": True, "call": 1}


# ─────────────────────────────────────────────
# MemoryStore
# ─────────────────────────────────────────────
async def test_memory_store_set_if_absent_is_exclusive(store):
    results = await asyncio.gather(*(store.set_if_absent("x", str(i), 1000) for i in range(20)))
    assert results.count(True) == 1


async def test_memory_store_expiry_and_pop(store):
    await store.set("s", "v", ttl=60)
    assert await store.pop("s") == "v"
    assert await store.pop("s") is None

    await store.set_if_absent("t", "v", ttl_ms=10)
    await asyncio.sleep(0.03)
    assert await store.get("t") is None
