"""In-memory rate limiter for kids mode PIN attempts and endpoint protection."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class InMemoryRateLimiter:
    """Sliding-window attempt counter per key.

    `allow()` checks and records in one step. The split `too_many_attempts`
    / `hit` / `clear` calls let callers count only failed attempts, which
    is how PIN validation uses it.
    """

    def __init__(self, clock=time.monotonic):
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()
        self._clock = clock

    def _prune(self, q: deque, now: float, window_seconds: int) -> None:
        cutoff = now - window_seconds
        while q and q[0] <= cutoff:
            q.popleft()

    def allow(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        now = self._clock()
        retry_after = 0
        with self._lock:
            q = self._hits[key]
            self._prune(q, now, window_seconds)
            if len(q) >= max_requests:
                retry_after = max(1, int(window_seconds - (now - q[0])))
                return False, retry_after
            q.append(now)
        return True, retry_after

    def hit(self, key: str, window_seconds: int) -> int:
        """Record one attempt for `key` and return the attempts in the window."""
        now = self._clock()
        with self._lock:
            q = self._hits[key]
            self._prune(q, now, window_seconds)
            q.append(now)
            return len(q)

    def too_many_attempts(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            q = self._hits.get(key)
            if not q:
                return False
            self._prune(q, now, window_seconds)
            return len(q) >= max_attempts

    def available_in(self, key: str, window_seconds: int) -> int:
        """Seconds until the oldest attempt for `key` leaves the window."""
        now = self._clock()
        with self._lock:
            q = self._hits.get(key)
            if not q:
                return 0
            self._prune(q, now, window_seconds)
            if not q:
                return 0
            return max(1, int(window_seconds - (now - q[0])))

    def clear(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)

    def reset(self) -> None:
        """Forget every key."""
        with self._lock:
            self._hits.clear()
