"""
Rate limiting for the apsflow service.

Per-process sliding window limits. Workitem submission and uploads each get
their own limiter; the key is the route name so one noisy client cannot
hide behind another route's budget.
"""

import time
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class RateLimitResult:
    """Outcome of one check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None

    def headers(self) -> Dict[str, str]:
        """Headers sent with a 429 response."""
        h = {"X-RateLimit-Remaining": str(self.remaining)}
        if self.retry_after is not None:
            h["Retry-After"] = str(int(self.retry_after) + 1)
        return h


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe. Each key keeps a deque of hit timestamps inside the window.
    """

    def __init__(self, rpm: int, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        """
        Args:
            rpm: Maximum requests per window
            window_seconds: Window size in seconds (default 60)
            clock: Time source, replaceable in tests
        """
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, deque] = defaultdict(deque)
        self._lock = threading.RLock()

    @property
    def limit(self) -> int:
        return self._limit

    def _expire(self, q: deque, now: float) -> int:
        window_start = now - self._window
        dropped = 0
        while q and q[0] < window_start:
            q.popleft()
            dropped += 1
        return dropped

    def check(self, key: str) -> RateLimitResult:
        """
        Record a hit for ``key`` unless its window is full.

        Returns:
            RateLimitResult; ``retry_after`` is set only when refused
        """
        now = self._clock()
        with self._lock:
            q = self._hits[key]
            self._expire(q, now)
            reset_at = (q[0] + self._window) if q else (now + self._window)

            if len(q) >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, q[0] + self._window - now),
                )

            q.append(now)
            return RateLimitResult(allowed=True, remaining=self._limit - len(q), reset_at=reset_at)

    def get_stats(self, key: str) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            q = self._hits.get(key) or deque()
            count = sum(1 for t in q if t >= now - self._window)
            return {
                "current": count,
                "limit": self._limit,
                "remaining": max(0, self._limit - count),
                "window_seconds": self._window,
            }

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when None."""
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()

    def cleanup_expired(self) -> int:
        """
        Drop expired hits and empty keys.

        Returns:
            Number of hits removed
        """
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._hits):
                removed += self._expire(self._hits[key], now)
                if not self._hits[key]:
                    del self._hits[key]
        return removed
