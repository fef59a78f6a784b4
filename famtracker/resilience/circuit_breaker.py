"""
Circuit breaker guarding calls to the position store.

States:
- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls are rejected immediately with CircuitOpenException
- HALF_OPEN: after the recovery timeout a limited number of probe calls
  are let through; success closes the circuit, failure reopens it
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """
    Configuration for a circuit breaker.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit.
        recovery_timeout_seconds: Time the circuit stays open before probing.
        half_open_max_calls: Probe calls allowed while half-open.
        tracked_exceptions: Exception types that count as failures. Anything
            else (e.g. a document-not-found) passes through untouched.
    """
    failure_threshold: int = 3
    recovery_timeout_seconds: float = 30.0
    half_open_max_calls: int = 1
    tracked_exceptions: Tuple[Type[BaseException], ...] = (Exception,)


class CircuitOpenException(Exception):
    """Raised instead of calling the protected service while the circuit is open."""

    def __init__(self, circuit_name: str, retry_in_seconds: Optional[float] = None):
        self.circuit_name = circuit_name
        self.retry_in_seconds = retry_in_seconds

        message = f"Circuit breaker '{circuit_name}' is open"
        if retry_in_seconds is not None:
            message += f", retry in {int(retry_in_seconds)} seconds"
        super().__init__(message)


class CircuitBreaker:
    """
    Async circuit breaker.

    Example:
        breaker = CircuitBreaker("elasticsearch")
        result = await breaker.execute(client.search, index="position_reports")
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _seconds_until_probe(self) -> float:
        if self._opened_at is None:
            return 0.0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self.config.recovery_timeout_seconds - elapsed)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        logger.warning(
            "Circuit breaker state change",
            extra={"extra_data": {
                "circuit": self.name,
                "from_state": self._state.value,
                "to_state": new_state.value,
                "failure_count": self._failure_count,
            }}
        )
        self._state = new_state

    async def _admit(self) -> None:
        async with self._lock:
            if self._state == CircuitState.OPEN:
                remaining = self._seconds_until_probe()
                if remaining > 0:
                    raise CircuitOpenException(self.name, remaining)
                self._transition(CircuitState.HALF_OPEN)
                self._half_open_calls = 0

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    raise CircuitOpenException(self.name, self._seconds_until_probe())
                self._half_open_calls += 1

    async def _record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            self._half_open_calls = 0
            self._opened_at = None
            self._transition(CircuitState.CLOSED)

    async def _record_failure(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._opened_at = self._clock()
                self._half_open_calls = 0
                self._transition(CircuitState.OPEN)
                return
            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any
    ) -> Any:
        """
        Await ``func(*args, **kwargs)`` under circuit breaker protection.

        Raises:
            CircuitOpenException: If the circuit is open (or its probe slot is taken)
            Exception: Whatever the underlying call raises
        """
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.config.tracked_exceptions:
            await self._record_failure()
            raise
        await self._record_success()
        return result

    def reset(self) -> None:
        """Force the circuit back to CLOSED."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._half_open_calls = 0

    def stats(self) -> Dict[str, Any]:
        """Snapshot used by the health endpoint."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "retry_in_seconds": round(self._seconds_until_probe(), 1)
            if self._state == CircuitState.OPEN else None,
        }

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failure_count={self._failure_count})"
        )
