"""In-process sliding-window request counter.

One instance is created per application and stored on ``app.state``; the
counters never live at module level so tests and workers get isolated state.
"""

from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Deque


class RateLimitExceeded(Exception):
    """Raised when a caller used up its request budget for the current window."""

    def __init__(self, retry_after: int = 60, detail: str = "Rate limit exceeded") -> None:
        self.retry_after = retry_after
        self.detail = detail
        super().__init__(detail)


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class SlidingWindowRateLimiter:
    """Count hits per key over the trailing ``window_seconds``.

    Keys idle for a full window are dropped on access, and at most
    ``max_keys`` keys are tracked; the least recently used key is evicted
    when the bound is reached.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_keys <= 0:
            raise ValueError("max_keys must be positive")
        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self.max_keys = max_keys
        self._clock = clock
        self._hits: OrderedDict[str, Deque[float]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            self._evict_idle(now)
            hits = self._hits.get(key)
            if hits is None:
                if len(self._hits) >= self.max_keys:
                    self._hits.popitem(last=False)
                hits = deque()
                self._hits[key] = hits
            else:
                self._hits.move_to_end(key)

            cutoff = now - self.window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = max(1, math.ceil(hits[0] + self.window_seconds - now))
                return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

            hits.append(now)
            return RateLimitDecision(allowed=True, remaining=self.max_requests - len(hits))

    def check(self, key: str) -> RateLimitDecision:
        """Like ``hit`` but raises ``RateLimitExceeded`` when the budget is spent."""

        decision = self.hit(key)
        if not decision.allowed:
            raise RateLimitExceeded(retry_after=decision.retry_after)
        return decision

    def _evict_idle(self, now: float) -> None:
        cutoff = now - self.window_seconds
        # least recently used first; stop at the first key still active
        while self._hits:
            key, hits = next(iter(self._hits.items()))
            if hits and hits[-1] > cutoff:
                break
            del self._hits[key]
