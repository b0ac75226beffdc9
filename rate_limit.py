"""
Per-client request limiting with fixed wall-clock windows.

Windows are aligned to multiples of the window length, so every client's
counter resets at the same moment. Counters live in an injected store.
"""
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float


class MemoryWindowStore:
    """Counters for the current window, kept in process memory."""

    def __init__(self):
        self._counts: Dict[str, int] = {}
        self._window: Optional[int] = None
        self._lock = threading.Lock()

    def increment(self, key: str, window_id: int) -> int:
        with self._lock:
            if window_id != self._window:
                # Everything stored belongs to an elapsed window
                self._counts.clear()
                self._window = window_id
            self._counts[key] = self._counts.get(key, 0) + 1
            return self._counts[key]

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._window = None

    def __len__(self) -> int:
        return len(self._counts)


class FixedWindowRateLimiter:
    """Allow at most ``limit`` hits per key in each ``window``-second interval."""

    def __init__(self, limit: int = 60, window: float = 60.0,
                 store: Optional[MemoryWindowStore] = None,
                 clock: Callable[[], float] = time.time):
        if limit < 1 or window <= 0:
            raise ValueError('limit must be >= 1 and window must be > 0')
        self.limit = limit
        self.window = window
        self.store = store if store is not None else MemoryWindowStore()
        self.clock = clock

    def hit(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` and report whether it may proceed."""
        now = self.clock()
        window_id = int(now // self.window)
        count = self.store.increment(key, window_id)
        reset_after = (window_id + 1) * self.window - now
        return RateLimitResult(
            allowed=count <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_after=reset_after,
        )
