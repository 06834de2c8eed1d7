"""Tests for the Redis read-through cache."""

from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

from shipflow.services.cache import NullCache, RedisCache, cache_key


class _FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int | None] = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def scan_iter(self, match):
        prefix = match.rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key

    async def aclose(self):
        self.closed = True


def test_key_ignores_dict_order():
    a = cache_key("ns", {"epRates": {"to": "94105", "from": "94607"}})
    b = cache_key("ns", {"epRates": {"from": "94607", "to": "94105"}})
    assert a == b
    assert a.startswith("ns:")
    assert cache_key("other", {"x": 1}) != cache_key("ns", {"x": 1})


@pytest.mark.asyncio
async def test_round_trip_with_ttl():
    fake = _FakeRedis()
    cache = RedisCache(fake, namespace="test", default_ttl_seconds=7200)

    await cache.set({"epRates": 1}, [{"id": "rate_1"}], ttl_seconds=60)
    await cache.set({"carrierTypes": "easypost"}, {"usps": {}})

    assert await cache.get({"epRates": 1}) == [{"id": "rate_1"}]
    assert sorted(fake.expiry.values()) == [60, 7200]


@pytest.mark.asyncio
async def test_miss_and_undecodable_entry():
    fake = _FakeRedis()
    cache = RedisCache(fake, namespace="test")
    assert await cache.get({"nope": 1}) is None

    fake.data[cache_key("test", {"bad": 1})] = "{not json"
    assert await cache.get({"bad": 1}) is None


@pytest.mark.asyncio
async def test_redis_failures_are_misses():
    client = AsyncMock()
    client.get.side_effect = redis.ConnectionError("down")
    client.set.side_effect = redis.ConnectionError("down")
    cache = RedisCache(client, namespace="test")

    assert await cache.get({"a": 1}) is None
    await cache.set({"a": 1}, "value")


@pytest.mark.asyncio
async def test_clear_all_stays_in_namespace():
    fake = _FakeRedis()
    mine = RedisCache(fake, namespace="mine")
    theirs = RedisCache(fake, namespace="theirs")
    await mine.set({"a": 1}, 1)
    await mine.set({"b": 2}, 2)
    await theirs.set({"a": 1}, 3)

    assert await mine.clear_all() == 2
    assert await theirs.get({"a": 1}) == 3

    await mine.close()
    assert fake.closed


@pytest.mark.asyncio
async def test_null_cache():
    cache = NullCache()
    await cache.set({"a": 1}, "value")
    assert await cache.get({"a": 1}) is None
    assert await cache.clear_all() == 0
