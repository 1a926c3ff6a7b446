"""Per-key fixed-window rate limiting backed by ``limits``.

Each limiter key (the API key hash) gets one fixed window that opens on its
first request and resets ``window_seconds`` later. Counting and window expiry
are delegated to ``limits``; its in-memory storage evicts expired windows on
its own, so counters for deleted or idle keys do not accumulate.

Fixed windows admit bursts of up to roughly twice the quota across a window
boundary. That is an accepted limitation of the O(1) design, not a bug.

State is process-local and lost on restart.
"""

import math
import time
from dataclasses import dataclass

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter as _FixedWindowStrategy

from packages.common.logging import StructuredLogger

RATE_LIMIT_LIMIT_HEADER = "X-RateLimit-Limit"
RATE_LIMIT_REMAINING_HEADER = "X-RateLimit-Remaining"
RATE_LIMIT_RESET_HEADER = "X-RateLimit-Reset"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one rate limit check.

    Attributes:
        allowed: Whether the request fits the quota.
        limit: Quota the request was checked against.
        remaining: Requests left in the current window (never negative).
        reset_at_ms: Epoch milliseconds at which the window resets.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int

    @property
    def reset_at_seconds(self) -> int:
        """Window reset as unix seconds (rounded up)."""
        return math.ceil(self.reset_at_ms / 1000)

    def retry_after_seconds(self, now_ms: int) -> int:
        """Seconds until the window resets, at least 1."""
        return max(1, math.ceil((self.reset_at_ms - now_ms) / 1000))

    def headers(self) -> dict[str, str]:
        """Response headers advertising the quota state."""
        return {
            RATE_LIMIT_LIMIT_HEADER: str(self.limit),
            RATE_LIMIT_REMAINING_HEADER: str(self.remaining),
            RATE_LIMIT_RESET_HEADER: str(self.reset_at_seconds),
        }



class FixedWindowRateLimiter:
    """Per-key fixed-window request counter.

    ``limits`` increments a window atomically under its storage lock, so
    concurrent checks for the same key from worker threads never lose
    increments.

    Example:
        >>> limiter = FixedWindowRateLimiter()
        >>> limiter.check("key-hash", quota=2).remaining
        1
    """

    def __init__(
        self,
        *,
        window_seconds: int = 60,
        storage: Storage | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            window_seconds: Window length.
            storage: ``limits`` storage backend; defaults to process memory.
            logger: Optional logger for quota diagnostics.
        """
        self._window_seconds = window_seconds
        self._storage = storage or MemoryStorage()
        self._strategy = _FixedWindowStrategy(self._storage)
        self._logger = logger

    def now_ms(self) -> int:
        """Current time in epoch milliseconds."""
        return int(time.time() * 1000)

    def _item(self, quota: int) -> RateLimitItem:
        return RateLimitItemPerSecond(quota, self._window_seconds)

    def check(self, key: str, quota: int) -> RateLimitDecision:
        """Count one request against ``key`` and decide whether it is allowed.

        Args:
            key: Limiter key (the API key hash).
            quota: Requests allowed per window. Zero or less always denies.

        Returns:
            RateLimitDecision: Allowed flag, remaining count and reset time.
        """
        if quota <= 0:
            return RateLimitDecision(
                allowed=False,
                limit=0,
                remaining=0,
                reset_at_ms=self.now_ms() + self._window_seconds * 1000,
            )

        item = self._item(quota)
        allowed = self._strategy.hit(item, key)
        reset_time, remaining = self._strategy.get_window_stats(item, key)
        if not allowed and self._logger is not None:
            self._logger.debug("rate_limit.exceeded", {"limit": quota, "reset_at": reset_time})

        return RateLimitDecision(
            allowed=allowed,
            limit=quota,
            remaining=max(0, remaining),
            reset_at_ms=int(round(reset_time * 1000)),
        )

    def clear(self, key: str, quota: int) -> None:
        """Drop the current window of ``key`` at ``quota``."""
        self._strategy.clear(self._item(quota), key)

    def reset(self) -> None:
        """Forget every window."""
        self._storage.reset()


__all__ = [
    "RATE_LIMIT_LIMIT_HEADER",
    "RATE_LIMIT_REMAINING_HEADER",
    "RATE_LIMIT_RESET_HEADER",
    "FixedWindowRateLimiter",
    "RateLimitDecision",
]
