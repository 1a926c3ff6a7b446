"""Retry helpers for storage calls made after a response decision.

Wraps async calls with exponential backoff using tenacity. Used for usage
counter persistence, which runs in the background and must not be dropped on
a transient Key Store failure.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def resilient_async_call(
    max_attempts: int = 3,
    min_wait: float = 0.1,
    max_wait: float = 2.0,
    retry_on: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry decorator for asynchronous storage calls.

    Wraps async calls with exponential backoff retry logic. Logs a warning
    before each retry attempt and re-raises the last error once attempts run out.

    Args:
        max_attempts: Maximum attempts including the first (default: 3).
        min_wait: Minimum wait time in seconds (default: 0.1).
        max_wait: Maximum wait time in seconds (default: 2.0).
        retry_on: Exception types to retry on (default: all exceptions).

    Returns:
        Callable: Decorator adding retry logic to an async function.

    Example:
        >>> persist = resilient_async_call(max_attempts=3)(store.increment_usage)
        >>> await persist("key_abc", key_hash)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


__all__ = ["resilient_async_call"]
