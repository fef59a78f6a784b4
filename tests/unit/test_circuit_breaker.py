"""
Unit tests for the circuit breaker guarding the position store.

State machine:
- CLOSED -> OPEN after the failure threshold
- OPEN -> HALF_OPEN after the recovery timeout
- HALF_OPEN -> CLOSED on a successful probe
- HALF_OPEN -> OPEN on a failed probe
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from famtracker.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenException,
    CircuitState,
)


class FakeClock:
    """Monotonic clock the tests can move forward by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


async def _open(breaker: CircuitBreaker) -> None:
    failing = AsyncMock(side_effect=ConnectionError("store down"))
    for _ in range(breaker.config.failure_threshold):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)
    assert breaker.state == CircuitState.OPEN


class TestCircuitBreakerConfig:
    def test_default_config(self):
        config = CircuitBreakerConfig()

        assert config.failure_threshold == 3
        assert config.recovery_timeout_seconds == 30.0
        assert config.half_open_max_calls == 1
        assert config.tracked_exceptions == (Exception,)

    def test_default_config_used_when_none_provided(self):
        breaker = CircuitBreaker("elasticsearch")

        assert breaker.name == "elasticsearch"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestCircuitBreakerClosedState:
    async def test_successful_call_passes_arguments(self):
        breaker = CircuitBreaker("test")
        mock_func = AsyncMock(return_value="success")

        result = await breaker.execute(mock_func, "arg1", kwarg1="value1")

        assert result == "success"
        mock_func.assert_called_once_with("arg1", kwarg1="value1")
        assert breaker.state == CircuitState.CLOSED

    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("test")
        failing = AsyncMock(side_effect=ConnectionError("Error"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.execute(failing)
        assert breaker.failure_count == 2

        await breaker.execute(AsyncMock(return_value="ok"))

        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED

    async def test_opens_after_three_consecutive_failures(self, clock):
        breaker = CircuitBreaker("test", clock=clock)

        await _open(breaker)

        assert breaker.failure_count == 3

    async def test_untracked_exceptions_do_not_count(self):
        config = CircuitBreakerConfig(failure_threshold=1, tracked_exceptions=(ConnectionError,))
        breaker = CircuitBreaker("test", config)

        with pytest.raises(KeyError):
            await breaker.execute(AsyncMock(side_effect=KeyError("missing")))

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestCircuitBreakerOpenState:
    async def test_rejects_calls_without_invoking_function(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await _open(breaker)

        mock_func = AsyncMock(return_value="never")
        with pytest.raises(CircuitOpenException) as exc_info:
            await breaker.execute(mock_func)

        assert exc_info.value.circuit_name == "test"
        mock_func.assert_not_called()

    async def test_exception_reports_time_until_probe(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await _open(breaker)
        clock.advance(10)

        with pytest.raises(CircuitOpenException) as exc_info:
            await breaker.execute(AsyncMock())

        assert exc_info.value.retry_in_seconds == pytest.approx(20.0)

    async def test_stays_open_until_recovery_timeout(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await _open(breaker)
        clock.advance(29.9)

        with pytest.raises(CircuitOpenException):
            await breaker.execute(AsyncMock())


class TestCircuitBreakerHalfOpenState:
    async def test_successful_probe_closes_circuit(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await _open(breaker)
        clock.advance(30)

        result = await breaker.execute(AsyncMock(return_value="recovered"))

        assert result == "recovered"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    async def test_failed_probe_reopens_circuit(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await _open(breaker)
        clock.advance(30)

        with pytest.raises(ConnectionError):
            await breaker.execute(AsyncMock(side_effect=ConnectionError("still down")))

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenException) as exc_info:
            await breaker.execute(AsyncMock())
        assert exc_info.value.retry_in_seconds == pytest.approx(30.0)

    async def test_allows_single_probe_at_a_time(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await _open(breaker)
        clock.advance(30)

        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "ok"

        probe = asyncio.create_task(breaker.execute(slow_probe))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenException):
            await breaker.execute(AsyncMock())

        release.set()
        assert await probe == "ok"
        assert breaker.state == CircuitState.CLOSED


class TestCircuitBreakerReset:
    async def test_manual_reset_closes_circuit(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await _open(breaker)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert await breaker.execute(AsyncMock(return_value="ok")) == "ok"


class TestCircuitBreakerStats:
    async def test_stats_while_closed(self):
        breaker = CircuitBreaker("elasticsearch")

        assert breaker.stats() == {
            "name": "elasticsearch",
            "state": "closed",
            "failure_count": 0,
            "retry_in_seconds": None,
        }

    async def test_stats_while_open(self, clock):
        breaker = CircuitBreaker("elasticsearch", clock=clock)
        await _open(breaker)
        clock.advance(5)

        stats = breaker.stats()

        assert stats["state"] == "open"
        assert stats["retry_in_seconds"] == 25.0

    def test_repr_includes_name_and_state(self):
        breaker = CircuitBreaker("my_service")

        assert "my_service" in repr(breaker)
        assert "closed" in repr(breaker)


class TestCircuitOpenException:
    def test_message_includes_name_and_retry_time(self):
        exc = CircuitOpenException("elasticsearch", 30)

        assert "elasticsearch" in str(exc)
        assert "30 seconds" in str(exc)

    def test_message_without_retry_time(self):
        exc = CircuitOpenException("elasticsearch")

        assert str(exc) == "Circuit breaker 'elasticsearch' is open"


class TestCircuitBreakerConcurrency:
    async def test_concurrent_failures_open_circuit_once(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        failing = AsyncMock(side_effect=ConnectionError("down"))

        results = await asyncio.gather(
            *(breaker.execute(failing) for _ in range(5)),
            return_exceptions=True,
        )

        assert all(isinstance(r, (ConnectionError, CircuitOpenException)) for r in results)
        assert breaker.state == CircuitState.OPEN
