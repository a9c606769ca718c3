import asyncio

import pytest

from autopilot.errors import NotFoundError


@pytest.mark.asyncio
async def test_get_returns_copy_and_expires(store, clock):
    await store.set("batch_job:1", {"id": "1", "items": [1]}, ttl_sec=10)

    record = await store.get("batch_job:1")
    record["items"].append(2)
    assert (await store.get("batch_job:1"))["items"] == [1]

    clock.advance(10)
    assert await store.get("batch_job:1") is None


@pytest.mark.asyncio
async def test_update_bumps_version_and_returns_result(store):
    await store.set("job", {"count": 0}, ttl_sec=60)

    def inc(record):
        record["count"] += 1
        return record, record["count"]

    assert await store.update("job", inc, ttl_sec=60) == 1
    assert await store.update("job", inc, ttl_sec=60) == 2
    record = await store.get("job")
    assert record["count"] == 2
    assert record["version"] == 2


@pytest.mark.asyncio
async def test_update_missing_or_expired_raises(store, clock):
    with pytest.raises(NotFoundError):
        await store.update("nope", lambda r: (r, None), ttl_sec=60)

    await store.set("job", {"count": 0}, ttl_sec=5)
    clock.advance(6)
    with pytest.raises(NotFoundError):
        await store.update("job", lambda r: (r, None), ttl_sec=60)


@pytest.mark.asyncio
async def test_update_refreshes_ttl(store, clock):
    await store.set("job", {"count": 0}, ttl_sec=10)
    clock.advance(8)
    await store.update("job", lambda r: (r, None), ttl_sec=10)
    clock.advance(8)
    assert await store.get("job") is not None


@pytest.mark.asyncio
async def test_concurrent_updates_lose_nothing(store):
    await store.set("job", {"count": 0}, ttl_sec=60)

    async def bump():
        def inc(record):
            record["count"] += 1
            return record, None
        await asyncio.sleep(0)
        await store.update("job", inc, ttl_sec=60)

    await asyncio.gather(*(bump() for _ in range(50)))
    assert (await store.get("job"))["count"] == 50


@pytest.mark.asyncio
async def test_append_unique_dedupes_and_lists_newest_first(store):
    assert await store.append_unique("dataset", "a:24h", {"n": 1}) is True
    assert await store.append_unique("dataset", "b:24h", {"n": 2}) is True
    assert await store.append_unique("dataset", "a:24h", {"n": 3}) is False

    assert await store.list_range("dataset", 0, -1) == [{"n": 2}, {"n": 1}]
    assert await store.list_range("dataset", 0, 0) == [{"n": 2}]
    assert await store.list_range("missing", 0, -1) == []
