"""Circuit breaker guarding calls to the embedding provider.

After ``failure_threshold`` consecutive failures the breaker opens and every
call is rejected with ``CircuitBreakerError`` until ``recovery_timeout`` has
passed. The next call is then let through as a single trial call: success closes
the breaker, failure reopens it for another full timeout.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger("circuit_breaker")


class CircuitBreakerState(Enum):
    CLOSED = "closed"        # calls flow
    OPEN = "open"            # calls rejected
    HALF_OPEN = "half_open"  # one trial call in flight


class CircuitBreakerError(Exception):
    """Raised instead of calling through while the breaker is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker {name} is open (retry in {retry_after:.1f}s)")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """Reject calls for ``recovery_timeout`` seconds after repeated failures."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: type = Exception,
        name: str = "circuit_breaker",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Configure a circuit breaker.

        Parameters
        - failure_threshold: Consecutive failures before opening
        - recovery_timeout: Seconds to stay open before allowing a trial call
        - expected_exception: Exception type(s) counted as failures; others
          pass through without touching the breaker
        - name: Identifier for logs
        - clock: Monotonic time source, injectable for tests
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self._clock = clock

        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func(*args, **kwargs)`` unless the breaker is open."""
        async with self._lock:
            self._admit()

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            async with self._lock:
                self._record_failure()
            raise

        async with self._lock:
            self._record_success()
        return result

    def _admit(self) -> None:
        if self.state == CircuitBreakerState.CLOSED:
            return

        remaining = self._remaining_open_time()
        if self.state == CircuitBreakerState.OPEN and remaining <= 0:
            self._transition(CircuitBreakerState.HALF_OPEN)
            return

        # Open, or a trial call is already in flight.
        raise CircuitBreakerError(self.name, max(remaining, 0.0))

    def _remaining_open_time(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        return self.recovery_timeout - (self._clock() - self.last_failure_time)

    def _record_success(self) -> None:
        self.failure_count = 0
        if self.state != CircuitBreakerState.CLOSED:
            self._transition(CircuitBreakerState.CLOSED)

    def _record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if (
            self.state == CircuitBreakerState.HALF_OPEN
            or self.failure_count >= self.failure_threshold
        ):
            self._transition(CircuitBreakerState.OPEN)

    def _transition(self, state: CircuitBreakerState) -> None:
        previous, self.state = self.state, state
        log = logger.warning if state == CircuitBreakerState.OPEN else logger.info
        log(
            "Circuit breaker state changed",
            name=self.name,
            previous=previous.value,
            state=state.value,
            failure_count=self.failure_count,
            threshold=self.failure_threshold,
        )

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time,
            "recovery_timeout": self.recovery_timeout,
        }
