from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int = 0


class SlidingWindowRateLimiter:
    """Per-key sliding-window request counter.

    Keeps the timestamps of accepted requests for each key. A hit first drops
    timestamps at or before ``now - window``; it is rejected when the remaining
    count has reached ``max_requests``, otherwise ``now`` is recorded.
    Rejected hits are not recorded, so a throttled client regains capacity as
    soon as its oldest accepted request leaves the window.

    Instances are independent; the clock is injectable so tests can step time.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 15 * 60,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}

    def _trim(self, hits: Deque[float], now: float) -> None:
        boundary = now - self.window_seconds
        while hits and hits[0] <= boundary:
            hits.popleft()

    def hit(self, key: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            hits = self._hits.setdefault(key, deque())
            self._trim(hits, now)
            if len(hits) >= self.max_requests:
                retry_after = hits[0] + self.window_seconds - now
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    retry_after_seconds=max(1, math.ceil(retry_after)),
                )
            hits.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - len(hits),
            )

    def remaining(self, key: str) -> int:
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return self.max_requests
            self._trim(hits, self._clock())
            return max(0, self.max_requests - len(hits))

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)

    def prune(self) -> int:
        """Drop keys whose windows have emptied; returns how many were removed."""
        with self._lock:
            now = self._clock()
            stale = []
            for key, hits in self._hits.items():
                self._trim(hits, now)
                if not hits:
                    stale.append(key)
            for key in stale:
                del self._hits[key]
            return len(stale)
