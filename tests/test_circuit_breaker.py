"""Tests for the circuit breaker."""

import asyncio

import pytest

from search_service.adapters.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerState,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def _fail():
    raise RuntimeError("service unavailable")


async def _ok():
    return "ok"


@pytest.mark.asyncio
async def test_opens_after_threshold():
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=10, name="test")

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)

    assert breaker.state == CircuitBreakerState.OPEN
    with pytest.raises(CircuitBreakerError):
        await breaker.call(_ok)


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    breaker = CircuitBreaker(failure_threshold=3)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    assert await breaker.call(_ok) == "ok"

    assert breaker.failure_count == 0
    assert breaker.state == CircuitBreakerState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_closes_on_success():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    assert breaker.state == CircuitBreakerState.OPEN

    clock.now += 30
    assert await breaker.call(_ok) == "ok"
    assert breaker.state == CircuitBreakerState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=clock)
    breaker.state = CircuitBreakerState.OPEN
    breaker.last_failure_time = clock.now

    clock.now += 31
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    assert breaker.state == CircuitBreakerState.OPEN
    stats = breaker.get_stats()
    assert stats["state"] == "open"
    assert stats["failure_count"] == 1


@pytest.mark.asyncio
async def test_unexpected_exception_type_not_counted():
    breaker = CircuitBreaker(failure_threshold=1, expected_exception=ConnectionError)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_only_one_trial_call_while_half_open():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    clock.now += 30

    release = asyncio.Event()

    async def _slow_trial():
        await release.wait()
        return "trial"

    trial = asyncio.ensure_future(breaker.call(_slow_trial))
    await asyncio.sleep(0)
    assert breaker.state == CircuitBreakerState.HALF_OPEN

    with pytest.raises(CircuitBreakerError) as excinfo:
        await breaker.call(_ok)
    assert excinfo.value.retry_after == 0.0

    release.set()
    assert await trial == "trial"
    assert breaker.state == CircuitBreakerState.CLOSED
