"""Metrics collection for the hybrid search platform.

Provides a thin convenience wrapper around ``prometheus_client`` so the
engine and its adapters consistently record search, per-source, embedding,
and cache metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- Each collector owns its registry so several engines can coexist in one
  process (and in tests) without duplicate-registration errors
"""

from typing import Optional

from prometheus_client import Counter, Histogram, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for search components.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry``
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.search_requests = Counter(
            'rag_search_requests_total',
            'Total search requests',
            ['query_type'],
            registry=self.registry
        )

        self.search_duration = Histogram(
            'rag_search_duration_seconds',
            'Search duration',
            ['query_type'],
            registry=self.registry
        )

        self.source_results = Counter(
            'rag_search_source_results_total',
            'Results returned to callers per retrieval source',
            ['source'],
            registry=self.registry
        )

        self.backend_failures = Counter(
            'rag_search_backend_failures_total',
            'Sub-search failures degraded to an empty contribution',
            ['source'],
            registry=self.registry
        )

        self.embedding_requests = Counter(
            'rag_embedding_requests_total',
            'Total embedding generation requests',
            ['model_name'],
            registry=self.registry
        )

        self.embedding_duration = Histogram(
            'rag_embedding_duration_seconds',
            'Embedding generation duration',
            ['model_name'],
            registry=self.registry
        )

        self.cache_hits = Counter(
            'rag_cache_hits_total',
            'Total cache hits',
            ['cache_type'],
            registry=self.registry
        )

        self.cache_misses = Counter(
            'rag_cache_misses_total',
            'Total cache misses',
            ['cache_type'],
            registry=self.registry
        )

    def record_search(self, query_type: str, duration: float) -> None:
        """Record search metrics. ``duration`` is in seconds."""
        self.search_requests.labels(query_type=query_type).inc()
        self.search_duration.labels(query_type=query_type).observe(duration)

    def record_source_results(self, source: str, count: int) -> None:
        """Record how many returned results came from ``source``."""
        if count:
            self.source_results.labels(source=source).inc(count)

    def record_backend_failure(self, source: str) -> None:
        self.backend_failures.labels(source=source).inc()

    def record_embedding(self, model_name: str, duration: float) -> None:
        """Record embedding generation metrics."""
        self.embedding_requests.labels(model_name=model_name).inc()
        self.embedding_duration.labels(model_name=model_name).observe(duration)

    def record_cache_hit(self, cache_type: str) -> None:
        self.cache_hits.labels(cache_type=cache_type).inc()

    def record_cache_miss(self, cache_type: str) -> None:
        self.cache_misses.labels(cache_type=cache_type).inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')
