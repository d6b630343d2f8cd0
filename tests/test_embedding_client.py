"""Tests for the HTTP embedding provider."""

import json

import httpx
import pytest

from libs.common.config import EmbeddingConfig
from libs.common.metrics import MetricsCollector
from search_service.adapters.circuit_breaker import CircuitBreaker
from search_service.adapters.embedding_client import HttpEmbeddingProvider
from search_service.errors import EmbeddingProviderError


def _provider(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_base_delay", 0)
    return HttpEmbeddingProvider("http://embedding.test/", model="mini", client=client, **kwargs)


@pytest.mark.asyncio
async def test_generate_embedding():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            "vectors": [[0.1, 0.2, 0.3]],
            "model_version": "mini-v2",
            "latency_ms": 12.5,
            "token_count": 4,
        })

    metrics = MetricsCollector("test-embedding")
    provider = _provider(handler, metrics=metrics)

    result = await provider.generate_embedding("reset my password")

    assert result.embedding == [0.1, 0.2, 0.3]
    assert result.model == "mini-v2"
    assert result.token_count == 4
    assert result.processing_time_ms == 12.5
    assert seen[0].url == "http://embedding.test/api/v1/embed"
    assert json.loads(seen[0].content) == {"items": [{"text": "reset my password"}], "model": "mini"}
    assert "rag_embedding_requests_total" in metrics.get_metrics()


@pytest.mark.asyncio
async def test_retries_transient_failures():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"vectors": [[1.0, 0.0]]})

    provider = _provider(handler, retry_attempts=3)

    result = await provider.generate_embedding("hello world")

    assert calls["count"] == 2
    assert result.embedding == [1.0, 0.0]
    assert result.token_count == 2
    assert result.model == "mini"


@pytest.mark.asyncio
async def test_exhausted_retries_raise_provider_error():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(500)

    provider = _provider(handler, retry_attempts=2)

    with pytest.raises(EmbeddingProviderError):
        await provider.generate_embedding("hello")
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_open_breaker_stops_retries():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(500)

    provider = _provider(
        handler,
        retry_attempts=5,
        circuit_breaker=CircuitBreaker(failure_threshold=1, recovery_timeout=60),
    )

    with pytest.raises(EmbeddingProviderError):
        await provider.generate_embedding("hello")
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_empty_vectors_raise():
    provider = _provider(lambda request: httpx.Response(200, json={"vectors": []}), retry_attempts=1)

    with pytest.raises(EmbeddingProviderError):
        await provider.generate_embedding("hello")


@pytest.mark.asyncio
@pytest.mark.parametrize("status,expected", [(200, True), (503, False)])
async def test_health_check(status, expected):
    provider = _provider(lambda request: httpx.Response(status))
    assert await provider.health_check() is expected


@pytest.mark.asyncio
async def test_health_check_connection_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    provider = _provider(handler)
    assert await provider.health_check() is False


def test_from_config():
    config = EmbeddingConfig(
        rag_embedding_service_url="http://embed:9006",
        rag_embedding_retry_attempts=5,
        rag_embedding_breaker_threshold=7,
    )

    provider = HttpEmbeddingProvider.from_config(config)

    assert provider.base_url == "http://embed:9006"
    assert provider.retry_attempts == 5
    assert provider.circuit_breaker.failure_threshold == 7
