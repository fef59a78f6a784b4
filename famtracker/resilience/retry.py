"""
Retry with exponential backoff.

Used by the road index refresher when loading segments from the store,
and by the storage layer when creating indices at startup.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Total attempts, including the first call.
        initial_delay: Delay before the first retry in seconds.
        exponential_base: Multiplier applied per attempt (1s, 2s, 4s, ...).
        max_delay: Optional cap on a single delay.
        jitter: Fraction of the delay added or removed at random.
        retryable_exceptions: Exception types that trigger a retry.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    exponential_base: float = 2.0
    max_delay: Optional[float] = None
    jitter: float = 0.0
    retryable_exceptions: Tuple[Type[Exception], ...] = field(
        default_factory=lambda: (Exception,)
    )


class RetryExhaustedException(Exception):
    """Raised when every attempt failed; wraps the last error."""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_exception: Exception,
        operation_name: Optional[str] = None
    ):
        self.attempts = attempts
        self.last_exception = last_exception
        self.operation_name = operation_name
        super().__init__(message)


def calculate_delay(
    attempt: int,
    initial_delay: float,
    exponential_base: float,
    max_delay: Optional[float] = None,
    jitter: float = 0.0,
) -> float:
    """
    Delay before retry number ``attempt`` (0-indexed).

    ``initial_delay * exponential_base ** attempt``, capped at max_delay,
    then spread by +/- jitter.
    """
    delay = initial_delay * (exponential_base ** attempt)

    if max_delay is not None:
        delay = min(delay, max_delay)

    if jitter:
        delay *= 1 + random.uniform(-jitter, jitter)

    return max(0.0, delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    operation_name: Optional[str] = None,
    **kwargs: Any
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying on configured exceptions.

    Raises:
        RetryExhaustedException: When all attempts failed
    """
    config = config or RetryConfig()
    op_name = operation_name or getattr(func, "__name__", "operation")
    attempts = max(1, config.max_attempts)

    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == attempts - 1:
                logger.error(
                    f"Retry exhausted for operation '{op_name}'",
                    exc_info=True,
                    extra={"extra_data": {
                        "operation": op_name,
                        "attempts": attempts,
                        "error_type": type(e).__name__,
                        "last_error": str(e),
                    }}
                )
                raise RetryExhaustedException(
                    f"Operation '{op_name}' failed after {attempts} attempts",
                    attempts=attempts,
                    last_exception=e,
                    operation_name=op_name
                ) from e

            delay = calculate_delay(
                attempt,
                config.initial_delay,
                config.exponential_base,
                config.max_delay,
                config.jitter,
            )
            logger.warning(
                f"Retrying operation '{op_name}'",
                extra={"extra_data": {
                    "operation": op_name,
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "delay_seconds": round(delay, 3),
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }}
            )
            await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises
    raise AssertionError("retry loop exited without result")
