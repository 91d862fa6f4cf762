"""
Catalog cache tests: cache-aside behaviour, invalidation and the
fail-open path, using a small in-memory stand-in for the Redis client.
"""
import fnmatch

import pytest

from marketplace.cache import CatalogCache


class FakeRedis:
    """Implements the handful of redis.asyncio calls the cache makes."""

    def __init__(self, fail: bool = False) -> None:
        self.store: dict[str, str] = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self.fail:
            raise ConnectionError("redis down")
        self.store[key] = value

    async def scan_iter(self, match):
        for key in list(self.store):
            if fnmatch.fnmatch(key, match):
                yield key

    async def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)


def _cache(redis_client=None) -> CatalogCache:
    cache = CatalogCache()
    cache._redis = redis_client
    return cache


@pytest.mark.asyncio
async def test_get_or_load_caches_loader_result():
    cache = _cache(FakeRedis())
    calls = []

    async def loader():
        calls.append(1)
        return {"id": 1, "price": "40.00"}

    key = cache.detail_key(1)
    assert await cache.get_or_load(key, loader, ttl=60) == {"id": 1, "price": "40.00"}
    assert await cache.get_or_load(key, loader, ttl=60) == {"id": 1, "price": "40.00"}
    assert len(calls) == 1
    assert cache.stats["hits"] == 1
    assert cache.stats["misses"] == 1


@pytest.mark.asyncio
async def test_missing_value_is_not_cached():
    redis_client = FakeRedis()
    cache = _cache(redis_client)

    async def loader():
        return None

    assert await cache.get_or_load(cache.detail_key(9), loader, ttl=60) is None
    assert redis_client.store == {}


@pytest.mark.asyncio
async def test_invalidate_drops_lists_and_one_detail():
    redis_client = FakeRedis()
    cache = _cache(redis_client)
    redis_client.store = {
        cache.list_key(1, 20, "created_at", "desc", None): "{}",
        cache.list_key(2, 20, "price", "asc", 7): "{}",
        cache.detail_key(1): "{}",
        cache.detail_key(2): "{}",
    }

    await cache.invalidate(1)

    assert list(redis_client.store) == [cache.detail_key(2)]


@pytest.mark.asyncio
async def test_disabled_cache_always_loads():
    cache = _cache(None)

    async def loader():
        return [1, 2]

    assert await cache.get_or_load("services:list:x", loader, ttl=60) == [1, 2]
    await cache.invalidate(1)
    assert cache.stats["enabled"] is False


@pytest.mark.asyncio
async def test_redis_errors_fail_open():
    cache = _cache(FakeRedis(fail=True))

    async def loader():
        return {"id": 3}

    assert await cache.get_or_load(cache.detail_key(3), loader, ttl=60) == {"id": 3}
    assert cache.stats["errors"] == 2
