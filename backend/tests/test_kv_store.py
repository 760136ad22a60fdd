import asyncio

import pytest

from gastozap.core.errors import StorageDegraded
from gastozap.core.kv_store import MemoryStore, guarded


@pytest.mark.asyncio
async def test_set_get_and_ttl_expiry(store, frozen_clock):
    await store.set("a", "1", ttl_seconds=10)
    await store.set("b", "2")
    assert await store.get("a") == "1"

    frozen_clock["now"] += 11
    assert await store.get("a") is None
    assert await store.get("b") == "2"


@pytest.mark.asyncio
async def test_incr_expire_accumulates_and_refreshes_ttl(store, frozen_clock):
    assert await store.incr_expire("n", 3, ttl_seconds=5) == 3
    frozen_clock["now"] += 4
    assert await store.incr_expire("n", 2, ttl_seconds=5) == 5

    frozen_clock["now"] += 4
    assert await store.get("n") == "5"

    frozen_clock["now"] += 2
    assert await store.incr_expire("n", 1, ttl_seconds=5) == 1


@pytest.mark.asyncio
async def test_keys_pattern_limit_and_count(store):
    for i in range(5):
        await store.set(f"ai-cache:openai:text:{i}", "x")
    await store.set("ai-cache:groq:buffer:0", "x")

    assert await store.count("ai-cache:openai:*") == 5
    assert await store.count("ai-cache:*:buffer:*") == 1
    assert len(await store.keys("ai-cache:*", limit=3)) == 3


@pytest.mark.asyncio
async def test_delete_reports_removed_count(store):
    await store.set("x", "1")
    await store.set("y", "1")
    assert await store.delete("x", "y", "missing") == 2
    assert await store.get("x") is None


@pytest.mark.asyncio
async def test_prune_drops_expired_keys_on_interval(frozen_clock):
    store = MemoryStore(prune_interval_seconds=1)
    for i in range(50):
        await store.set(f"k:{i}", "v", ttl_seconds=1)

    frozen_clock["now"] += 5
    await store.set("fresh", "v")
    assert list(store._data) == ["fresh"]


@pytest.mark.asyncio
async def test_guarded_wraps_backend_errors():
    async def boom():
        raise ConnectionError("redis down")

    with pytest.raises(StorageDegraded) as exc:
        await guarded(boom(), 0.5)
    assert "redis down" in str(exc.value)


@pytest.mark.asyncio
async def test_guarded_times_out_slow_calls():
    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(StorageDegraded):
        await guarded(slow(), 0.01)


@pytest.mark.asyncio
async def test_capacity_evicts_least_recently_written_keys(frozen_clock):
    store = MemoryStore(max_keys=10)
    for i in range(100):
        await store.set(f"k:{i}", "v")

    assert await store.count("k:*") <= 10
    assert await store.get("k:99") == "v"
    assert await store.get("k:0") is None


@pytest.mark.asyncio
async def test_rewrite_keeps_a_key_ahead_of_eviction(frozen_clock):
    store = MemoryStore(max_keys=3)
    await store.set("hot", "1")
    await store.set("a", "v")
    await store.set("b", "v")
    await store.incr_expire("hot", 1, ttl_seconds=60)
    await store.set("c", "v")

    assert await store.get("hot") == "2"
    assert await store.get("a") is None
    assert await store.count("*") <= 3
