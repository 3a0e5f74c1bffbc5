"""
Dispatch rate limiting.
"""

from collections import defaultdict, deque

from jobqueue.clock import Clock


class SlidingWindowRateLimiter:
    """
    Rolling-window rate limiter.

    Allows at most `limit` acquisitions per key within any window of
    `window_seconds`. Acquisitions are recorded synchronously, so
    concurrent dispatch attempts on one event loop cannot overshoot.
    """

    def __init__(self, limit: int, window_seconds: float, clock: Clock):
        """
        Initialize the rate limiter.

        Args:
            limit: Maximum acquisitions per window.
            window_seconds: Length of the rolling window.
            clock: Monotonic time source.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._stamps: dict[str, deque[float]] = defaultdict(deque)

    def _prune(self, key: str, now: float) -> deque[float]:
        stamps = self._stamps[key]
        while stamps and now - stamps[0] >= self._window:
            stamps.popleft()
        return stamps

    def check(self, key: str) -> tuple[bool, float]:
        """
        Try to acquire one slot.

        Args:
            key: Rate limit key (the queue name).

        Returns:
            Tuple of (allowed, wait_time_seconds).
        """
        now = self._clock.monotonic()
        stamps = self._prune(key, now)

        if len(stamps) < self._limit:
            stamps.append(now)
            return True, 0.0

        return False, self._window - (now - stamps[0])

    def refund(self, key: str) -> None:
        """Give back the most recent slot (nothing was dispatched)."""
        stamps = self._stamps.get(key)
        if stamps:
            stamps.pop()

    def wait_time(self, key: str) -> float:
        """Time in seconds until a slot frees up."""
        now = self._clock.monotonic()
        stamps = self._prune(key, now)
        if len(stamps) < self._limit:
            return 0.0
        return self._window - (now - stamps[0])

    def reset(self, key: str) -> None:
        """Reset rate limit for a key."""
        self._stamps.pop(key, None)
