"""Embedding provider contract and its HTTP client.

The engine only needs ``generate_embedding(text)`` and ``health_check()``.
``HttpEmbeddingProvider`` implements them against the embedding service's
``POST /api/v1/embed`` and ``GET /health`` endpoints, with retry/backoff and
a circuit breaker around every call.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from libs.common.config import EmbeddingConfig
from libs.common.metrics import MetricsCollector

from ..errors import EmbeddingProviderError
from ..models import EmbeddingResult
from .circuit_breaker import CircuitBreaker, CircuitBreakerError

logger = structlog.get_logger("search_service.embedding_client")


class EmbeddingProvider(ABC):
    """Turns text into a fixed-length vector."""

    @abstractmethod
    async def generate_embedding(self, text: str) -> EmbeddingResult:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass


class HttpEmbeddingProvider(EmbeddingProvider):
    """Client for the embedding service.

    Parameters
    - base_url: Embedding service root URL
    - model: Model name sent with every request
    - client: Optional pre-built ``httpx.AsyncClient`` (owned by the caller)
    - retry_attempts / retry_base_delay / retry_max_delay: exponential backoff
    - circuit_breaker: Optional breaker; a default one is created otherwise
    """

    def __init__(
        self,
        base_url: str,
        model: str = "default",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 8.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            name="embedding_service",
        )
        self.metrics = metrics
        self._owns_client = client is None
        self.http_client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(
        cls,
        config: EmbeddingConfig,
        client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> "HttpEmbeddingProvider":
        return cls(
            base_url=config.rag_embedding_service_url,
            model=config.rag_embedding_model,
            timeout=config.rag_embedding_timeout,
            client=client,
            retry_attempts=config.rag_embedding_retry_attempts,
            retry_base_delay=config.rag_embedding_retry_base_delay,
            retry_max_delay=config.rag_embedding_retry_max_delay,
            circuit_breaker=CircuitBreaker(
                failure_threshold=config.rag_embedding_breaker_threshold,
                recovery_timeout=config.rag_embedding_breaker_recovery,
                name="embedding_service",
            ),
            metrics=metrics,
        )

    async def _call_with_retry(
        self,
        func: Callable[[], Awaitable[Any]],
        operation_name: str,
    ) -> Any:
        """Execute a coroutine-returning callable with retry and backoff."""
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await func()
            except CircuitBreakerError as cb_error:
                logger.error(
                    "Circuit breaker open, aborting retries",
                    operation=operation_name,
                    error=str(cb_error)
                )
                raise
            except Exception as exc:
                if attempt == self.retry_attempts:
                    logger.error(
                        "Operation failed after retries",
                        operation=operation_name,
                        attempts=attempt,
                        error=str(exc)
                    )
                    raise

                delay = min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)
                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=self.retry_attempts,
                    delay_seconds=delay,
                    error=str(exc)
                )
                await asyncio.sleep(delay)

        raise RuntimeError(f"Retry logic failed for {operation_name}")

    async def _request_embedding(self, text: str) -> EmbeddingResult:
        started = time.perf_counter()
        response = await self.http_client.post(
            f"{self.base_url}/api/v1/embed",
            json={"items": [{"text": text}], "model": self.model},
        )
        response.raise_for_status()

        data = response.json()
        vectors = data.get("vectors") or []
        if not vectors:
            raise EmbeddingProviderError("Embedding service returned no vectors")

        elapsed_ms = (time.perf_counter() - started) * 1000
        return EmbeddingResult(
            embedding=vectors[0],
            token_count=data.get("token_count", len(text.split())),
            processing_time_ms=data.get("latency_ms", elapsed_ms),
            model=data.get("model_version", self.model),
        )

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Embed ``text``; raises ``EmbeddingProviderError`` once retries are exhausted."""
        started = time.perf_counter()
        try:
            result = await self._call_with_retry(
                lambda: self.circuit_breaker.call(self._request_embedding, text),
                operation_name="embedding_service_request",
            )
        except EmbeddingProviderError:
            raise
        except Exception as e:
            raise EmbeddingProviderError(f"Embedding generation failed: {e}") from e

        if self.metrics:
            self.metrics.record_embedding(result.model, time.perf_counter() - started)
        return result

    async def health_check(self) -> bool:
        try:
            response = await self.http_client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except Exception as e:
            logger.error("Embedding service health check failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
