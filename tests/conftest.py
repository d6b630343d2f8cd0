"""Shared fixtures: mocked backends and an engine wired to them."""

from unittest.mock import AsyncMock

import pytest

from libs.common.metrics import MetricsCollector
from search_service.hybrid import HybridQueryEngine
from search_service.models import EmbeddingResult

QUERY_EMBEDDING = [0.1] * 384


def rpc_router(responses):
    """Build an ``rpc`` side effect answering per function name.

    A value that is an exception instance is raised instead of returned.
    """
    async def _rpc(function_name, params):
        value = responses.get(function_name, [])
        if isinstance(value, Exception):
            raise value
        return value

    return _rpc


@pytest.fixture
def vector_backend():
    backend = AsyncMock()
    backend.search.return_value = []
    backend.search_conversations.return_value = []
    backend.search_messages.return_value = []
    backend.health_check.return_value = True
    return backend


@pytest.fixture
def embedding_provider():
    provider = AsyncMock()
    provider.generate_embedding.return_value = EmbeddingResult(
        embedding=QUERY_EMBEDDING,
        token_count=5,
        processing_time_ms=50,
    )
    provider.health_check.return_value = True
    return provider


@pytest.fixture
def rpc_client():
    client = AsyncMock()
    client.rpc.side_effect = rpc_router({})
    client.health_check.return_value = True
    return client


@pytest.fixture
def metrics():
    return MetricsCollector("test-hybrid-engine")


@pytest.fixture
def make_engine(vector_backend, embedding_provider, rpc_client, metrics):
    """Factory fixture: ``make_engine(config=..., cache_manager=...)``."""
    def _make(config=None, cache_manager=None):
        return HybridQueryEngine(
            vector_backend=vector_backend,
            embedding_provider=embedding_provider,
            rpc_client=rpc_client,
            config=config,
            cache_manager=cache_manager,
            metrics=metrics,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()
