import asyncio
import os

import pytest
import pytest_asyncio

from contact_api.services.store import MemoryStore, RedisStore


@pytest.mark.asyncio
async def test_memory_store_get_set_delete(store):
    assert await store.get("missing") is None
    assert await store.get("missing", default=0) == 0

    await store.set("k", {"count": 1})
    assert await store.get("k") == {"count": 1}

    assert await store.delete("k") is True
    assert await store.delete("k") is False


@pytest.mark.asyncio
async def test_memory_store_ttl_expiry(store, clock):
    await store.set("k", "v", ttl=10)
    clock.advance(9.9)
    assert await store.get("k") == "v"
    clock.advance(0.1)
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_memory_store_non_positive_ttl_removes(store):
    await store.set("k", "v")
    await store.set("k", "v", ttl=0)
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_memory_store_pop_is_get_and_delete(store, clock):
    await store.set("token", 123.0, ttl=5)
    assert await store.pop("token") == 123.0
    assert await store.pop("token") is None

    await store.set("stale", 1, ttl=5)
    clock.advance(5)
    assert await store.pop("stale") is None


@pytest.mark.asyncio
async def test_memory_store_purge_expired(store, clock):
    await store.set("a", 1, ttl=1)
    await store.set("b", 2, ttl=100)
    await store.set("c", 3)
    clock.advance(2)

    assert await store.purge_expired() == 1
    assert len(store) == 2


@pytest.mark.asyncio
async def test_memory_store_lock_serializes_read_modify_write():
    store = MemoryStore()
    await store.set("counter", 0)

    async def increment():
        async with store.lock("counter"):
            value = await store.get("counter")
            await asyncio.sleep(0)
            await store.set("counter", value + 1)

    await asyncio.gather(*[increment() for _ in range(20)])

    assert await store.get("counter") == 20
    assert store._locks == {}


REDIS_URL = os.getenv("REDIS_URL")


@pytest_asyncio.fixture
async def redis_store():
    import redis.asyncio as redis

    client = redis.from_url(REDIS_URL, decode_responses=True)
    store = RedisStore(client, prefix="contact-test")
    yield store
    async for key in client.scan_iter(match="contact-test:*"):
        await client.delete(key)
    await client.aclose()


@pytest.mark.skipif(not REDIS_URL, reason="REDIS_URL not set (expected reachable redis)")
@pytest.mark.asyncio
async def test_redis_store_round_trip_and_pop(redis_store):
    await redis_store.set("k", {"count": 2}, ttl=30)
    assert await redis_store.get("k") == {"count": 2}
    assert await redis_store.pop("k") == {"count": 2}
    assert await redis_store.pop("k") is None


@pytest.mark.skipif(not REDIS_URL, reason="REDIS_URL not set (expected reachable redis)")
@pytest.mark.asyncio
async def test_redis_store_lock_serializes(redis_store):
    await redis_store.set("counter", 0)

    async def increment():
        async with redis_store.lock("counter"):
            value = await redis_store.get("counter")
            await asyncio.sleep(0)
            await redis_store.set("counter", value + 1)

    await asyncio.gather(*[increment() for _ in range(5)])

    assert await redis_store.get("counter") == 5
