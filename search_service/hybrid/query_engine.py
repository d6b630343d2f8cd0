"""Hybrid query engine: vector + full-text + knowledge-graph retrieval.

A search embeds the query text, fans out to three retrieval sources
concurrently, and folds their hits through ``combine_and_rank_results``:

- Vector: similarity search on the vector backend (dominant at default
  weights, so an embedding failure fails the whole search)
- Text: ``search_knowledge_text`` full-text function over RPC
- Graph: ``search_graph_knowledge`` traversal function over RPC

Any single source failing contributes nothing instead of aborting the
search. The engine also serves similarity expansion, conversation-history
search, direct knowledge-graph queries, statistics and a health check.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type, TypeVar, Union

import structlog
from pydantic import BaseModel, ValidationError
from pydantic.alias_generators import to_camel

from libs.common.config import SearchConfig
from libs.common.logging import configure_logging_from_config, log_performance
from libs.vector_store.base import RpcClient, VectorSearchBackend
from libs.vector_store.factory import create_search_backends_from_config

from ..adapters.embedding_client import EmbeddingProvider, HttpEmbeddingProvider
from ..errors import EmbeddingProviderError, InvalidSearchQueryError
from ..models import (
    CombinedResult,
    ConversationHistoryQuery,
    EmbeddingResult,
    GraphHit,
    HybridConfig,
    MAX_QUERY_LENGTH,
    KnowledgeGraphQuery,
    SearchQuery,
    SearchStats,
    VectorHit,
)
from ..ranking.fusion import (
    HitLike,
    combine_and_rank_results,
    merge_by_id,
    prepare_text_query,
    select_source_hits,
    to_hits,
)
from ..retrievers.cache_manager import SearchCacheManager
from ..runtime.metrics import MetricsCollector
from ..runtime.stats import SearchStatsTracker

logger = structlog.get_logger("search_service.hybrid_query_engine")

TEXT_SEARCH_FUNCTION = "search_knowledge_text"
GRAPH_SEARCH_FUNCTION = "search_graph_knowledge"
KNOWLEDGE_GRAPH_FUNCTION = "search_knowledge_graph"

_CONFIG_ALIASES = {to_camel(name): name for name in HybridConfig.model_fields}

QueryT = TypeVar("QueryT", bound=BaseModel)


class HybridQueryEngine:
    """Merges vector, text and graph retrieval into one ranked list.

    Parameters
    - vector_backend: similarity search over knowledge and messages
    - embedding_provider: turns query text into a vector
    - rpc_client: invokes the text and graph search functions
    - config: ``HybridConfig`` or a mapping of fields merged over defaults
    - cache_manager: result cache (an in-process ``SearchCacheManager`` by default)
    - metrics: optional ``MetricsCollector`` (one is created otherwise)
    """

    def __init__(
        self,
        vector_backend: VectorSearchBackend,
        embedding_provider: EmbeddingProvider,
        rpc_client: RpcClient,
        config: Optional[Union[HybridConfig, Mapping[str, Any]]] = None,
        cache_manager: Optional[SearchCacheManager] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.vector_backend = vector_backend
        self.embedding_provider = embedding_provider
        self.rpc_client = rpc_client
        self.cache_manager = cache_manager if cache_manager is not None else SearchCacheManager()
        self.metrics = metrics or MetricsCollector("hybrid-query-engine")
        self._stats = SearchStatsTracker()

        if isinstance(config, HybridConfig):
            self._config = config.model_copy()
        else:
            self._config = HybridConfig.model_validate(_normalize_config_keys(config or {}))

    # ------------------------------------------------------------------
    # Hybrid search
    # ------------------------------------------------------------------

    async def search(self, query: Union[SearchQuery, Mapping[str, Any]]) -> List[CombinedResult]:
        """Run a hybrid search and return results ranked by combined score."""
        query = _coerce_query(SearchQuery, query)
        config = self._config
        started = time.perf_counter()

        cached = await self.cache_manager.get_cached_search_results(query, config)
        self._stats.record_cache_lookup(cached is not None)
        if cached is not None:
            self.metrics.record_cache_hit("search_results")
            self._record_query("hybrid", started, cached)
            return cached
        self.metrics.record_cache_miss("search_results")

        vector_hits, text_hits, graph_hits = await self._gather_sources(query, config)
        results = combine_and_rank_results(vector_hits, text_hits, graph_hits, config)

        await self.cache_manager.cache_search_results(query, config, results)

        self._record_query("hybrid", started, results)
        logger.info(
            "Hybrid search completed",
            business_id=query.business_id,
            vector_results=len(vector_hits),
            text_results=len(text_hits),
            graph_results=len(graph_hits),
            results_count=len(results),
        )
        return results

    async def search_with_similarity_expansion(
        self,
        query: Union[SearchQuery, Mapping[str, Any]],
    ) -> List[CombinedResult]:
        """Hybrid search, then one round of "more like these" vector lookups.

        When ``expand_similar`` is set, the content of each of the top
        ``max_expansions`` results is embedded and searched again. Expansion
        hits join the vector list and everything is re-ranked through the
        same reducer, so thresholds, caps and dedup still hold. Expansion
        results are never expanded themselves.
        """
        query = _coerce_query(SearchQuery, query)
        config = self._config
        started = time.perf_counter()

        vector_hits, text_hits, graph_hits = await self._gather_sources(query, config)
        results = combine_and_rank_results(vector_hits, text_hits, graph_hits, config)

        expanded = bool(query.expand_similar and results and query.max_expansions > 0)
        if expanded:
            seeds = results[:min(query.max_expansions, len(results))]
            batches = await asyncio.gather(*(
                self._guarded("expansion", self._expand_from(seed, query, config))
                for seed in seeds
            ))
            expansion_hits = [hit for batch in batches for hit in batch]
            results = combine_and_rank_results(
                vector_hits + expansion_hits, text_hits, graph_hits, config
            )
            logger.info(
                "Similarity expansion completed",
                business_id=query.business_id,
                seeds=len(seeds),
                expansion_results=len(expansion_hits),
                results_count=len(results),
            )

        self._record_query("expansion" if expanded else "hybrid", started, results, expanded=expanded)
        return results

    def combine_and_rank_results(
        self,
        vector_results: List[HitLike],
        text_results: List[HitLike],
        graph_results: List[HitLike],
    ) -> List[CombinedResult]:
        """Fuse three source lists under the live config (no I/O)."""
        return combine_and_rank_results(vector_results, text_results, graph_results, self._config)

    async def _gather_sources(self, query: SearchQuery, config: HybridConfig):
        embedding = await self._embed(query.text) if query.text else None

        return await asyncio.gather(
            self._guarded("vector", self._vector_search(query, embedding, config)),
            self._guarded("text", self._text_search(query, config)),
            self._guarded("graph", self._graph_search(query, config)),
        )

    async def _vector_search(
        self,
        query: SearchQuery,
        embedding: Optional[List[float]],
        config: HybridConfig,
    ) -> List[VectorHit]:
        if embedding is None:
            return []

        rows = await self.vector_backend.search(
            self._descriptor(query, query.text),
            embedding,
            self._vector_options(query, config),
        )
        return select_source_hits(
            rows or [], "vector", config.max_vector_results, config.vector_threshold
        )

    async def _text_search(self, query: SearchQuery, config: HybridConfig):
        if not query.text:
            return []

        rows = await self.rpc_client.rpc(TEXT_SEARCH_FUNCTION, {
            "search_query": prepare_text_query(query.text),
            "business_id": query.business_id,
            "max_results": config.max_text_results,
        })
        return select_source_hits(
            rows or [], "text", config.max_text_results, config.text_threshold
        )

    async def _graph_search(self, query: SearchQuery, config: HybridConfig):
        entities = query.entities or ([query.text] if query.text else [])
        if not entities:
            return []

        rows = await self.rpc_client.rpc(GRAPH_SEARCH_FUNCTION, {
            "business_id": query.business_id,
            "entities": entities,
            "query_text": query.text,
            "max_results": config.max_graph_results,
        })
        # No per-source threshold for graph; the combined threshold still applies.
        return select_source_hits(rows or [], "graph", config.max_graph_results)

    async def _expand_from(
        self,
        seed: CombinedResult,
        query: SearchQuery,
        config: HybridConfig,
    ) -> List[VectorHit]:
        embedding = await self._embed(seed.content)
        rows = await self.vector_backend.search(
            self._descriptor(query, seed.content),
            embedding,
            self._vector_options(query, config),
        )
        hits = select_source_hits(
            rows or [], "vector", config.max_vector_results, config.vector_threshold
        )
        for hit in hits:
            hit.metadata.setdefault("expanded_from", seed.id)
        return hits

    # ------------------------------------------------------------------
    # Direct queries
    # ------------------------------------------------------------------

    async def search_knowledge_graph(
        self,
        query: Union[KnowledgeGraphQuery, Mapping[str, Any]],
    ) -> List[GraphHit]:
        """Pass-through graph query on explicit entities and relationships."""
        query = _coerce_query(KnowledgeGraphQuery, query)
        started = time.perf_counter()

        try:
            rows = await self.rpc_client.rpc(KNOWLEDGE_GRAPH_FUNCTION, {
                "entities": query.entities,
                "relationships": query.relationships,
                "business_id": query.business_id,
                "max_results": query.limit or self._config.max_graph_results,
            })
        except Exception as e:
            logger.error(
                "Knowledge graph search failed",
                business_id=query.business_id,
                error=str(e),
            )
            self.metrics.record_backend_failure("graph")
            rows = []

        results = to_hits(rows or [], "graph")
        elapsed = time.perf_counter() - started
        self.metrics.record_search("knowledge_graph", elapsed)
        log_performance(
            "knowledge_graph_search",
            elapsed * 1000,
            business_id=query.business_id,
            results_count=len(results),
        )
        return results

    async def search_conversation_history(
        self,
        query: Union[ConversationHistoryQuery, Mapping[str, Any]],
    ) -> List[Any]:
        """Vector search over a conversation's messages, optionally tenant-wide.

        Returns ``ConversationHit`` and ``MessageHit`` records deduplicated by
        id and sorted by raw score; no cross-source weighting applies.
        """
        query = _coerce_query(ConversationHistoryQuery, query)
        config = self._config
        started = time.perf_counter()

        embedding = await self._embed(query.text)
        descriptor = {
            "query": query.text,
            "business_id": query.business_id,
            "conversation_id": query.conversation_id,
        }
        options = {"limit": query.limit, "threshold": config.vector_threshold}

        lookups = [
            self._guarded("conversation", self._history_lookup(
                self.vector_backend.search_conversations, "conversation",
                descriptor, embedding, options,
            )),
        ]
        if query.include_related_conversations:
            lookups.append(self._guarded("message", self._history_lookup(
                self.vector_backend.search_messages, "message",
                descriptor, embedding, options,
            )))

        batches = await asyncio.gather(*lookups)
        results = merge_by_id(hit for batch in batches for hit in batch)[:max(query.limit, 0)]

        self.metrics.record_search("conversation_history", time.perf_counter() - started)
        logger.info(
            "Conversation history search completed",
            business_id=query.business_id,
            conversation_id=query.conversation_id,
            include_related=query.include_related_conversations,
            results_count=len(results),
        )
        return results

    @staticmethod
    async def _history_lookup(
        lookup: Callable[..., Awaitable[List[Dict[str, Any]]]],
        source: str,
        descriptor: Dict[str, Any],
        embedding: List[float],
        options: Dict[str, Any],
    ) -> List[Any]:
        rows = await lookup(descriptor, embedding, options)
        return to_hits(rows or [], source)

    # ------------------------------------------------------------------
    # Stats, config, health
    # ------------------------------------------------------------------

    def get_stats(self) -> SearchStats:
        return self._stats.snapshot()

    def get_config(self) -> HybridConfig:
        return self._config.model_copy()

    def update_config(
        self,
        partial: Optional[Union[HybridConfig, Mapping[str, Any]]] = None,
        **fields: Any,
    ) -> HybridConfig:
        """Shallow-merge ``partial`` (and keyword fields) into the live config.

        A ``HybridConfig`` partial contributes only the fields that were set
        explicitly on it.

        Field types are validated; value ranges are not. The new config is
        swapped in as a whole, so a search already in flight keeps the
        snapshot it started with.
        """
        if isinstance(partial, BaseModel):
            partial = partial.model_dump(exclude_unset=True)
        updates = _normalize_config_keys({**(partial or {}), **fields})
        self._config = HybridConfig.model_validate({**self._config.model_dump(), **updates})
        logger.info("Hybrid config updated", **updates)
        return self.get_config()

    async def health_check(self) -> bool:
        """Healthy when both the vector backend and the embedding provider are.

        The RPC client (text and graph search) does not take part.
        """
        vector_ok, embedding_ok = await asyncio.gather(
            _check_health("vector_backend", self.vector_backend.health_check),
            _check_health("embedding_provider", self.embedding_provider.health_check),
        )
        return vector_ok and embedding_ok

    async def clear_cache(self) -> int:
        return await self.cache_manager.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _embed(self, text: str) -> List[float]:
        try:
            result = await self.embedding_provider.generate_embedding(text)
        except EmbeddingProviderError:
            raise
        except Exception as e:
            logger.error("Query embedding generation failed", error=str(e))
            raise EmbeddingProviderError(f"Embedding generation failed: {e}") from e

        if not isinstance(result, EmbeddingResult):
            result = EmbeddingResult.model_validate(result)
        return result.embedding

    async def _guarded(self, source: str, operation: Awaitable[List[Any]]) -> List[Any]:
        """Await a sub-search; a failure degrades to an empty contribution."""
        try:
            return await operation
        except Exception as e:
            logger.error("Sub-search failed, continuing without it", source=source, error=str(e))
            self.metrics.record_backend_failure(source)
            return []

    @staticmethod
    def _descriptor(query: SearchQuery, text: Optional[str]) -> Dict[str, Any]:
        descriptor: Dict[str, Any] = {
            "query": text,
            "business_id": query.business_id,
            "conversation_id": query.conversation_id,
            "assistant_id": query.assistant_id,
        }
        if query.context_boost is not None:
            descriptor["context_boost"] = query.context_boost.model_dump()
        return descriptor

    @staticmethod
    def _vector_options(query: SearchQuery, config: HybridConfig) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "limit": config.max_vector_results,
            "threshold": config.vector_threshold,
        }
        filters = query.filters
        if filters is not None:
            if filters.category:
                options["filter_types"] = list(filters.category)
            if filters.time_range is not None:
                options["time_range"] = filters.time_range.model_dump()
        return options

    def _record_query(
        self,
        query_type: str,
        started: float,
        results: List[CombinedResult],
        expanded: bool = False,
    ) -> None:
        elapsed = time.perf_counter() - started
        self._stats.record_query(elapsed * 1000, results, expanded=expanded)
        self.metrics.record_search(query_type, elapsed)
        for source in ("vector", "text", "graph"):
            self.metrics.record_source_results(
                source, sum(1 for result in results if result.source == source)
            )


def _coerce_query(model: Type[QueryT], query: Union[QueryT, Mapping[str, Any]]) -> QueryT:
    """Validate a query model and reject blank tenants or overlong text before any I/O."""
    if not isinstance(query, model):
        try:
            query = model.model_validate(query)
        except ValidationError as e:
            raise InvalidSearchQueryError(f"Invalid {model.__name__}: {e}") from e

    if not query.business_id or not query.business_id.strip():
        raise InvalidSearchQueryError("business_id is required")
    text = getattr(query, "text", None)
    if text is not None and len(text) > MAX_QUERY_LENGTH:
        raise InvalidSearchQueryError(
            f"Query text is too long (max {MAX_QUERY_LENGTH} characters)"
        )
    return query


def _normalize_config_keys(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {_CONFIG_ALIASES.get(key, key): value for key, value in values.items()}


async def _check_health(name: str, check: Callable[[], Awaitable[bool]]) -> bool:
    try:
        return bool(await check())
    except Exception as e:
        logger.error("Health check failed", dependency=name, error=str(e))
        return False


def get_default_hybrid_config() -> HybridConfig:
    return HybridConfig()


def create_hybrid_query_engine(
    vector_backend: VectorSearchBackend,
    embedding_provider: EmbeddingProvider,
    rpc_client: RpcClient,
    cache_manager: Optional[SearchCacheManager] = None,
    metrics: Optional[MetricsCollector] = None,
    **config_fields: Any,
) -> HybridQueryEngine:
    """Create an engine; ``config_fields`` are merged over the defaults."""
    return HybridQueryEngine(
        vector_backend=vector_backend,
        embedding_provider=embedding_provider,
        rpc_client=rpc_client,
        config=config_fields,
        cache_manager=cache_manager,
        metrics=metrics,
    )


def create_hybrid_query_engine_from_config(
    config: Optional[SearchConfig] = None,
) -> HybridQueryEngine:
    """Wire an engine with the Postgres backends and HTTP embedding client."""
    config = config or SearchConfig()
    configure_logging_from_config(config)
    metrics = MetricsCollector("hybrid-query-engine")
    rpc_client, vector_backend = create_search_backends_from_config(config)

    cache_manager = None
    if config.rag_search_cache_enabled:
        cache_manager = SearchCacheManager(
            redis_url=config.rag_redis_url,
            result_cache_ttl=config.rag_search_result_cache_ttl,
        )

    return HybridQueryEngine(
        vector_backend=vector_backend,
        embedding_provider=HttpEmbeddingProvider.from_config(config, metrics=metrics),
        rpc_client=rpc_client,
        config=config.to_hybrid_config(),
        cache_manager=cache_manager,
        metrics=metrics,
    )
