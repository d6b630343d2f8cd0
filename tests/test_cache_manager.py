"""Tests for the search result cache."""

import fnmatch
import json
from unittest.mock import AsyncMock

import pytest

from search_service.models import CombinedResult, HybridConfig, SearchQuery
from search_service.retrievers.cache_manager import SearchCacheManager


class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio calls used."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    async def scan_iter(self, match=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return SearchCacheManager(redis_client=fake_redis, result_cache_ttl=120)


def _results():
    return [
        CombinedResult(id="1", content="Refund policy", score=0.9, source="vector",
                       combined_score=0.45, metadata={"category": "faq"}),
    ]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _query(text="refund"):
    return SearchQuery(text=text, business_id="business-123")


@pytest.mark.asyncio
async def test_memory_only_cache_round_trip():
    cache = SearchCacheManager()
    assert cache.redis_client is None

    assert await cache.get_cached_search_results(_query(), HybridConfig()) is None
    await cache.cache_search_results(_query(), HybridConfig(), _results())

    assert await cache.get_cached_search_results(_query(), HybridConfig()) == _results()
    assert await cache.get_cached_search_results(_query(), HybridConfig(vector_weight=0.6)) is None


@pytest.mark.asyncio
async def test_memory_hits_are_copies():
    cache = SearchCacheManager()
    await cache.cache_search_results(_query(), HybridConfig(), _results())

    first = await cache.get_cached_search_results(_query(), HybridConfig())
    first[0].metadata["category"] = "changed"

    second = await cache.get_cached_search_results(_query(), HybridConfig())
    assert second[0].metadata == {"category": "faq"}


@pytest.mark.asyncio
async def test_memory_tier_evicts_oldest_entry():
    cache = SearchCacheManager(max_memory_entries=100)
    for i in range(101):
        await cache.cache_search_results(_query(f"q{i}"), HybridConfig(), _results())

    assert cache.memory_size == 100
    assert await cache.get_cached_search_results(_query("q0"), HybridConfig()) is None
    assert await cache.get_cached_search_results(_query("q1"), HybridConfig()) == _results()
    assert await cache.get_cached_search_results(_query("q100"), HybridConfig()) == _results()


@pytest.mark.asyncio
async def test_memory_entries_expire():
    clock = FakeClock()
    cache = SearchCacheManager(result_cache_ttl=60, clock=clock)
    await cache.cache_search_results(_query(), HybridConfig(), _results())

    clock.now += 59
    assert await cache.get_cached_search_results(_query(), HybridConfig()) == _results()

    clock.now += 1
    assert await cache.get_cached_search_results(_query(), HybridConfig()) is None
    assert cache.memory_size == 0


@pytest.mark.asyncio
async def test_memory_only_clear_and_close():
    cache = SearchCacheManager()
    await cache.cache_search_results(_query("a"), HybridConfig(), _results())
    await cache.cache_search_results(_query("b"), HybridConfig(), _results())

    assert await cache.clear() == 2
    assert await cache.get_cached_search_results(_query("a"), HybridConfig()) is None

    await cache.close()


def test_cache_key_depends_on_query_and_config(cache):
    query = SearchQuery(text="refund", business_id="business-123")
    config = HybridConfig()

    key = cache.cache_key_for(query, config)

    assert key.startswith("hybrid:result:")
    assert key == cache.cache_key_for(SearchQuery(text="refund", business_id="business-123"), HybridConfig())
    assert key != cache.cache_key_for(query, HybridConfig(vector_weight=0.6))
    assert key != cache.cache_key_for(SearchQuery(text="refund", business_id="other"), config)


@pytest.mark.asyncio
async def test_round_trip(cache, fake_redis):
    query = SearchQuery(text="refund", business_id="business-123")
    config = HybridConfig()

    assert await cache.get_cached_search_results(query, config) is None

    await cache.cache_search_results(query, config, _results())
    cached = await cache.get_cached_search_results(query, config)

    assert cached == _results()
    key = cache.cache_key_for(query, config)
    assert fake_redis.ttls[key] == 120
    assert "cached_at" in json.loads(fake_redis.store[key])


@pytest.mark.asyncio
async def test_redis_errors_are_misses():
    client = AsyncMock()
    client.get.side_effect = ConnectionError("redis down")
    client.setex.side_effect = ConnectionError("redis down")
    cache = SearchCacheManager(redis_client=client)
    query = SearchQuery(text="refund", business_id="business-123")

    assert await cache.get_cached_search_results(query, HybridConfig()) is None

    await cache.cache_search_results(query, HybridConfig(), _results())
    # The memory tier still serves the entry Redis failed to store
    assert await cache.get_cached_search_results(query, HybridConfig()) == _results()


@pytest.mark.asyncio
async def test_clear_only_removes_result_keys(cache, fake_redis):
    query = SearchQuery(text="refund", business_id="business-123")
    await cache.cache_search_results(query, HybridConfig(), _results())
    fake_redis.store["unrelated:key"] = "keep"

    deleted = await cache.clear()

    assert deleted == 1
    assert list(fake_redis.store) == ["unrelated:key"]


@pytest.mark.asyncio
async def test_redis_hit_fills_memory_tier(fake_redis):
    query = SearchQuery(text="refund", business_id="business-123")
    writer = SearchCacheManager(redis_client=fake_redis)
    await writer.cache_search_results(query, HybridConfig(), _results())

    reader = SearchCacheManager(redis_client=fake_redis)
    assert await reader.get_cached_search_results(query, HybridConfig()) == _results()
    assert reader.memory_size == 1

    fake_redis.store.clear()
    assert await reader.get_cached_search_results(query, HybridConfig()) == _results()
