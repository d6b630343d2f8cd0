"""Cumulative search statistics kept in memory for the engine's lifetime.

All mutation happens synchronously between awaits on the event loop, so
concurrent searches never interleave inside an update.
"""

from typing import Iterable

from ..models import CombinedResult, SearchStats


class SearchStatsTracker:
    def __init__(self) -> None:
        self._stats = SearchStats()
        self._cache_lookups = 0
        self._cache_hits = 0

    def record_query(
        self,
        duration_ms: float,
        results: Iterable[CombinedResult],
        expanded: bool = False,
    ) -> None:
        """Fold one finished search into the running averages."""
        results = list(results)
        stats = self._stats
        served = stats.total_queries

        stats.avg_query_time_ms = (stats.avg_query_time_ms * served + duration_ms) / (served + 1)
        stats.avg_result_count = (stats.avg_result_count * served + len(results)) / (served + 1)
        stats.total_queries = served + 1

        for result in results:
            stats.source_breakdown[result.source] = stats.source_breakdown.get(result.source, 0) + 1

        if expanded:
            stats.expansion_usage += 1

    def record_cache_lookup(self, hit: bool) -> None:
        self._cache_lookups += 1
        if hit:
            self._cache_hits += 1
        self._stats.cache_hit_rate = self._cache_hits / self._cache_lookups

    def snapshot(self) -> SearchStats:
        return self._stats.model_copy(deep=True)
