"""
Rate limiting for the public StrandSign endpoints.

Sliding window limiter with per-key tracking, applied to signing links
and claim links, which require no session.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe; each key keeps a deque of hit times inside the window.
    Keys with no hits left in the window are swept out once per window.
    """

    def __init__(self, rpm: int, window_seconds: int = 60):
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._hits: Dict[str, deque] = defaultdict(deque)
        self._lock = threading.RLock()
        self._last_sweep = time.time()

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """Check the limit for a key and record the hit when allowed."""
        now = time.time()
        window_start = now - self._window

        with self._lock:
            # Drop idle keys once per window
            if now - self._last_sweep >= self._window:
                self.cleanup_expired()

            q = self._hits[key]
            while q and q[0] < window_start:
                q.popleft()

            current_count = len(q)
            reset_at = (q[0] + self._window) if q else (now + self._window)

            if current_count >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, q[0] + self._window - now)
                )

            q.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=self._limit - current_count - 1,
                reset_at=reset_at
            )

    def reset(self, key: Optional[str] = None) -> None:
        """Reset counters for one key, or all keys."""
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()

    def cleanup_expired(self) -> int:
        """
        Remove expired entries from all keys, and keys left empty.

        Returns:
            Number of entries removed
        """
        now = time.time()
        window_start = now - self._window
        removed = 0

        with self._lock:
            empty_keys = []

            for key, q in self._hits.items():
                while q and q[0] < window_start:
                    q.popleft()
                    removed += 1

                if not q:
                    empty_keys.append(key)

            for key in empty_keys:
                del self._hits[key]

            self._last_sweep = now

        return removed

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)
