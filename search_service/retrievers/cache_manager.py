"""Cache manager for hybrid search results."""

import hashlib
import json
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
import structlog

from ..models import CombinedResult, HybridConfig, SearchQuery

logger = structlog.get_logger("search_cache")

DEFAULT_MEMORY_ENTRIES = 100


class SearchCacheManager:
    """Caches ranked result lists in process memory and, optionally, Redis.

    Keys hash the full query together with the config in force, so a config
    update never serves results ranked under the old weights. The memory tier
    is bounded to ``max_memory_entries`` and evicts the oldest entry first.
    Redis is consulted on a memory miss when a URL or client is configured.
    Every Redis failure is logged and treated as a miss.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        result_cache_ttl: int = 300,
        redis_client: Optional[Any] = None,
        key_prefix: str = "hybrid:result:",
        max_memory_entries: int = DEFAULT_MEMORY_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if redis_client is None and redis_url is not None:
            redis_client = redis.from_url(redis_url)
        self.redis_client = redis_client
        self.result_cache_ttl = result_cache_ttl
        self.result_prefix = key_prefix
        self.max_memory_entries = max_memory_entries
        self._clock = clock
        self._memory: "OrderedDict[str, Tuple[float, List[CombinedResult]]]" = OrderedDict()

    def _generate_cache_key(self, data: Dict[str, Any]) -> str:
        sorted_data = json.dumps(data, sort_keys=True, default=str)
        hash_obj = hashlib.md5(sorted_data.encode())
        return f"{self.result_prefix}{hash_obj.hexdigest()}"

    def cache_key_for(self, query: SearchQuery, config: HybridConfig) -> str:
        return self._generate_cache_key({
            "query": query.model_dump(mode="json"),
            "config": config.model_dump(),
        })

    @property
    def memory_size(self) -> int:
        return len(self._memory)

    def _memory_get(self, key: str) -> Optional[List[CombinedResult]]:
        entry = self._memory.get(key)
        if entry is None:
            return None
        expires_at, results = entry
        if self._clock() >= expires_at:
            del self._memory[key]
            return None
        return [result.model_copy(deep=True) for result in results]

    def _memory_set(self, key: str, results: List[CombinedResult]) -> None:
        self._memory.pop(key, None)
        while self._memory and len(self._memory) >= self.max_memory_entries:
            self._memory.popitem(last=False)
        if self.max_memory_entries > 0:
            self._memory[key] = (
                self._clock() + self.result_cache_ttl,
                [result.model_copy(deep=True) for result in results],
            )

    async def get_cached_search_results(
        self,
        query: SearchQuery,
        config: HybridConfig,
    ) -> Optional[List[CombinedResult]]:
        """Return cached results, or ``None`` on a miss."""
        key = self.cache_key_for(query, config)
        cached = self._memory_get(key)
        if cached is not None:
            logger.debug("Search results memory cache hit", business_id=query.business_id)
            return cached

        if self.redis_client is None:
            logger.debug("Search results cache miss", business_id=query.business_id)
            return None

        try:
            cached_data = await self.redis_client.get(key)
            if not cached_data:
                logger.debug("Search results cache miss", business_id=query.business_id)
                return None

            result_data = json.loads(cached_data)
            results = [CombinedResult.model_validate(item) for item in result_data["results"]]
            logger.debug("Search results cache hit", business_id=query.business_id)

        except Exception as e:
            logger.warning("Failed to get cached search results", error=str(e))
            return None

        self._memory_set(key, results)
        return results

    async def cache_search_results(
        self,
        query: SearchQuery,
        config: HybridConfig,
        results: List[CombinedResult],
    ) -> None:
        key = self.cache_key_for(query, config)
        self._memory_set(key, results)
        if self.redis_client is None:
            return

        try:
            result_data = {
                "results": [result.model_dump(mode="json") for result in results],
                "cached_at": time.time(),
            }
            await self.redis_client.setex(
                key,
                self.result_cache_ttl,
                json.dumps(result_data, default=str)
            )
            logger.debug("Search results cached", count=len(results))

        except Exception as e:
            logger.warning("Failed to cache search results", error=str(e))

    async def clear(self) -> int:
        """Drop every cached result list and return how many keys were removed."""
        removed = set(self._memory)
        self._memory.clear()

        if self.redis_client is not None:
            try:
                keys = [
                    key async for key in self.redis_client.scan_iter(match=f"{self.result_prefix}*")
                ]
                if keys:
                    await self.redis_client.delete(*keys)
                removed.update(key.decode() if isinstance(key, bytes) else key for key in keys)
            except Exception as e:
                logger.warning("Failed to clear search result cache", error=str(e))

        logger.info("Search result cache cleared", deleted=len(removed))
        return len(removed)

    async def close(self) -> None:
        self._memory.clear()
        if self.redis_client is not None:
            await self.redis_client.aclose()
