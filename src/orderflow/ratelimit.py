"""Per-source request rate limiting."""

import threading
import time
from collections import deque
from typing import Callable

from .errors import RateLimitExceededError


class RateLimiter:
    """Sliding-window limiter keyed by source (client IP)."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def check(self, source: str) -> None:
        """
        Record a request from source.

        Raises:
            RateLimitExceededError: If source is over its budget for the window.
        """
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(source, deque())
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if len(hits) >= self.max_requests:
                raise RateLimitExceededError(source)
            hits.append(now)

    def reset(self, source: str | None = None) -> None:
        with self._lock:
            if source is None:
                self._hits.clear()
            else:
                self._hits.pop(source, None)
