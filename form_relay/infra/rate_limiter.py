"""
In-process sliding window rate limiter used as the admission gate.
"""

import logging
import math
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

from ..domain.ports import RateLimiter


logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter(RateLimiter):
    """
    Per-key sliding window limiter.

    Note: state is per process. Several instances behind a load balancer
    each enforce their own window.
    """

    def __init__(
        self,
        window_seconds: float = 900,
        max_requests: int = 100,
        name: str = "general",
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize limiter.

        Args:
            window_seconds: Length of the window
            max_requests: Hits allowed per key within one window
            name: Label used in logs
            clock: Monotonic time source, injectable for tests
        """
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.name = name
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def allow(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)

            hits = self._hits[key]
            self._expire(hits, now)
            if len(hits) >= self.max_requests:
                logger.warning(
                    f"Rate limit exceeded for {key}",
                    extra={
                        "component": "rate_limiter",
                        "limiter": self.name,
                        "client_ip": key,
                        "max_requests": self.max_requests,
                        "window_seconds": self.window_seconds
                    }
                )
                return False

            hits.append(now)
            return True

    def retry_after(self, key: str) -> int:
        with self._lock:
            hits = self._hits.get(key)
            if not hits or len(hits) < self.max_requests:
                return 0
            now = self._clock()
            wait = hits[0] + self.window_seconds - now
            return max(int(math.ceil(wait)), 0)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key."""
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)

    def _expire(self, hits: Deque[float], now: float) -> None:
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()

    def _maybe_sweep(self, now: float) -> None:
        # Drop keys with no hits left in the window, at most once per window
        if now - self._last_sweep < self.window_seconds:
            return
        for key in list(self._hits):
            hits = self._hits[key]
            self._expire(hits, now)
            if not hits:
                del self._hits[key]
        self._last_sweep = now

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)
