"""
Retry utilities for handling transient failures.

Provides exponential backoff with jitter for broker publishes. A publish that
fails with a transient error is retried in place; once retries are exhausted
the row is left for a later poll cycle.

This module provides:
- RetryConfig: Configuration for retry behavior
- RetryStats: Statistics for retry operations
- RetryError: Exception raised when all retries are exhausted
- calculate_backoff: Calculate delay with exponential backoff and jitter
- is_retryable_exception: Decide whether an error is worth retrying
- retry_async: Retry an async operation with exponential backoff
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from outboxrelay.exceptions import PublishError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Common transient exceptions that should be retried
TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,  # Includes network errors
)


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 = no retries)
        initial_delay: Initial delay in seconds before first retry
        max_delay: Maximum delay in seconds between retries
        exponential_base: Base for exponential backoff calculation
        jitter: Fraction of delay to add as random jitter (0-1)

    Example:
        >>> config = RetryConfig(
        ...     max_retries=3,
        ...     initial_delay=1.0,
        ...     max_delay=30.0,
        ... )
    """

    max_retries: int = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ValueError(
                f"max_retries must be >= 0, got {self.max_retries}. Use 0 for no retries."
            )

        if self.initial_delay <= 0:
            raise ValueError(f"initial_delay must be positive, got {self.initial_delay}.")

        if self.max_delay <= 0:
            raise ValueError(f"max_delay must be positive, got {self.max_delay}.")

        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )

        if self.exponential_base <= 1.0:
            raise ValueError(f"exponential_base must be > 1.0, got {self.exponential_base}.")

        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {self.jitter}.")


@dataclass
class RetryStats:
    """
    Statistics for a single retried operation.

    Attributes:
        attempts: Total number of attempts (including initial)
        successes: Number of successful attempts
        failures: Number of failed attempts
        total_delay_seconds: Total time spent in delays
        last_error: String representation of the last error
    """

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    total_delay_seconds: float = 0.0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert stats to dictionary for logging."""
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "total_delay_seconds": self.total_delay_seconds,
            "last_error": self.last_error,
        }


class RetryError(Exception):
    """
    Raised when all retry attempts fail.

    Attributes:
        message: Error message
        attempts: Number of attempts made
        last_error: The last exception that was raised
    """

    def __init__(self, message: str, attempts: int, last_error: Exception) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
) -> float:
    """
    Calculate backoff delay with exponential growth and jitter.

    Args:
        attempt: Current attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds

    Example:
        >>> config = RetryConfig(initial_delay=1.0, max_delay=60.0, jitter=0.0)
        >>> calculate_backoff(0, config)
        1.0
        >>> calculate_backoff(3, config)
        8.0
    """
    delay = config.initial_delay * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay)

    jitter_range = delay * config.jitter
    delay += random.uniform(-jitter_range, jitter_range)  # nosec B311 - not crypto

    return max(0, delay)


def is_retryable_exception(
    exception: Exception,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> bool:
    """
    Check if an exception is one of the retryable types.

    A ``PublishError`` the broker marked non-retriable is never retryable,
    whatever the tuple says.
    """
    if isinstance(exception, PublishError) and not exception.retriable:
        return False
    return isinstance(exception, retryable_exceptions)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
    operation_name: str = "operation",
) -> T:
    """
    Retry an async operation with exponential backoff.

    Args:
        operation: Async function to retry
        config: Retry configuration (uses defaults if None)
        retryable_exceptions: Exception types to retry on
        operation_name: Name for logging purposes

    Returns:
        Result of successful operation

    Raises:
        RetryError: If all retries exhausted
        Exception: Non-retryable exceptions are raised immediately

    Example:
        >>> await retry_async(
        ...     lambda: broker.send(message),
        ...     config=RetryConfig(max_retries=3),
        ...     operation_name="publish",
        ... )
    """
    config = config or RetryConfig()
    stats = RetryStats()
    last_error: Exception | None = None

    for attempt in range(config.max_retries + 1):
        stats.attempts += 1

        try:
            result = await operation()
            stats.successes += 1

            if attempt > 0:
                logger.info(
                    f"Operation {operation_name} succeeded after retry",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt + 1,
                        "total_attempts": stats.attempts,
                    },
                )

            return result

        except retryable_exceptions as e:
            last_error = e
            stats.failures += 1
            stats.last_error = str(e)

            if attempt < config.max_retries:
                delay = calculate_backoff(attempt, config)
                stats.total_delay_seconds += delay

                logger.warning(
                    f"Retrying {operation_name} after failure",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt + 1,
                        "max_retries": config.max_retries,
                        "delay_seconds": delay,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )

                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"All retries exhausted for {operation_name}",
                    extra={"operation": operation_name, **stats.to_dict()},
                )

    assert last_error is not None
    raise RetryError(
        f"Failed after {stats.attempts} attempts: {last_error}",
        attempts=stats.attempts,
        last_error=last_error,
    )


__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetryError",
    "calculate_backoff",
    "retry_async",
    "is_retryable_exception",
    "TRANSIENT_EXCEPTIONS",
]
