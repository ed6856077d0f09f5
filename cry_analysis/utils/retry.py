"""Retry policy and retry utility with exponential backoff.

RetryPolicy is the business-level policy for analysis records: it owns
the retry cap and the delay before the next scheduled attempt. The
retry_with_backoff decorator covers short in-call retries of storage
reads and never touches the record's retry counter.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for analysis retries.

    Delay follows the formula: base_delay_seconds * 2^retry_count, where
    retry_count is the record's counter after the failed attempt has been
    counted.
    """

    max_retries: int = 3
    base_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0")

    def backoff_delay(self, retry_count: int) -> float:
        """Seconds to wait before the attempt following retry_count failures."""
        return self.base_delay_seconds * (2 ** max(retry_count, 0))

    def can_retry(self, retry_count: int) -> bool:
        """True while retry_count is below the cap."""
        return retry_count < self.max_retries

    def next_retry_count(self, retry_count: int) -> int:
        """Increment a retry counter without exceeding the cap."""
        return min(retry_count + 1, self.max_retries)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
) -> Callable:
    """Decorator for retrying async functions with exponential backoff.

    Delay follows the formula: base_delay * 2^attempt

    Args:
        max_retries: Maximum number of retry attempts (default 3).
        base_delay: Base delay in seconds before first retry (default 1.0).
        retryable_exceptions: Tuple of exception types eligible for retry.
            If None, all exceptions are retried. Non-retryable exceptions
            are re-raised immediately.

    Returns:
        Decorator that wraps an async function with retry logic.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_error: Exception | None = None
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    last_error = exc
                    if retryable_exceptions is not None and not isinstance(
                        exc, retryable_exceptions
                    ):
                        raise
                    if attempt < max_retries:
                        delay = base_delay * (2**attempt)
                        logger.warning(
                            "Retry %d/%d for %s after %.1fs: %s",
                            attempt + 1,
                            max_retries,
                            func.__name__,
                            delay,
                            exc,
                        )
                        await asyncio.sleep(delay)
            raise last_error  # type: ignore[misc]

        return wrapper

    return decorator
