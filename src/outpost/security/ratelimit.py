"""Per-client rate limiting using sliding window counters.

The relay limits each client IP to ``max_requests`` proxied requests per
``window_seconds``. The previous window's count is weighted by how much of it
still overlaps the sliding window, which smooths the burst a fixed window
allows at its boundary.

Example:
    limiter = create_rate_limiter(max_requests=100, window_seconds=60.0)

    result = await limiter.allow("192.168.1.1")
    if not result.allowed:
        return 429  # Too Many Requests
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from time import monotonic


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    max_requests: int = 100
    window_seconds: float = 60.0
    max_entries: int = 10000


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    reset_after: float
    limit: int


class SlidingWindowCounter:
    """Sliding window counter with O(1) operations.

    Keeps the current and previous window counts and interpolates between
    them instead of storing individual timestamps.
    """

    __slots__ = (
        "_current_count",
        "_previous_count",
        "_window_start",
        "_window_seconds",
        "_limit",
    )

    def __init__(self, limit: int, window_seconds: float = 1.0) -> None:
        self._limit = limit
        self._window_seconds = window_seconds
        self._current_count = 0
        self._previous_count = 0
        self._window_start = monotonic()

    def _maybe_rotate(self, now: float) -> None:
        elapsed = now - self._window_start
        if elapsed >= self._window_seconds:
            windows_passed = int(elapsed / self._window_seconds)
            if windows_passed >= 2:
                self._previous_count = 0
            else:
                self._previous_count = self._current_count
            self._current_count = 0
            self._window_start = now - (elapsed % self._window_seconds)

    def _weighted(self, now: float) -> tuple[float, float]:
        self._maybe_rotate(now)
        elapsed = now - self._window_start
        weight = elapsed / self._window_seconds
        weighted = self._previous_count * (1 - weight) + self._current_count
        return weighted, self._window_seconds - elapsed

    def allow(self, now: float | None = None) -> tuple[bool, int, float]:
        """Check if a request is allowed and count it.

        Returns:
            Tuple of (allowed, remaining, reset_after_seconds)
        """
        weighted, reset_after = self._weighted(monotonic() if now is None else now)
        remaining = max(0, int(self._limit - weighted))

        if weighted >= self._limit:
            return False, remaining, reset_after

        self._current_count += 1
        return True, remaining - 1, reset_after


@dataclass
class RateLimiter:
    """Keyed rate limiter with LRU eviction for bounded memory."""

    config: RateLimitConfig = field(default_factory=RateLimitConfig)
    _counters: OrderedDict[str, SlidingWindowCounter] = field(
        default_factory=OrderedDict, init=False
    )
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def _get_counter(self, key: str) -> SlidingWindowCounter:
        if key in self._counters:
            self._counters.move_to_end(key)
            return self._counters[key]

        counter = SlidingWindowCounter(
            limit=self.config.max_requests,
            window_seconds=self.config.window_seconds,
        )
        self._counters[key] = counter

        while len(self._counters) > self.config.max_entries:
            self._counters.popitem(last=False)

        return counter

    async def allow(self, key: str) -> RateLimitResult:
        """Count a request for ``key`` and report whether it may proceed."""
        async with self._lock:
            counter = self._get_counter(key)
            allowed, remaining, reset_after = counter.allow()
            return RateLimitResult(
                allowed=allowed,
                remaining=remaining,
                reset_after=reset_after,
                limit=self.config.max_requests,
            )


def create_rate_limiter(
    max_requests: int = 100,
    window_seconds: float = 60.0,
    max_entries: int = 10000,
) -> RateLimiter:
    """Create a rate limiter with the given configuration."""
    return RateLimiter(
        config=RateLimitConfig(
            max_requests=max_requests,
            window_seconds=window_seconds,
            max_entries=max_entries,
        )
    )
