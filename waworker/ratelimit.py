from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Dict


class SlidingWindowLimiter:
    """Per-caller sliding window: at most ``max_requests`` per ``window`` seconds."""

    def __init__(
        self,
        max_requests: int,
        window: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_purge = clock()

    def __len__(self) -> int:
        return len(self._hits)

    def hit(self, key: str) -> float:
        """Record a request for ``key``.

        Returns 0 when allowed, otherwise the seconds until the oldest hit in
        the window expires. Rejected requests are not recorded.
        """
        now = self._clock()
        cutoff = now - self.window
        if now - self._last_purge >= self.window:
            self._purge(cutoff)
            self._last_purge = now
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self.max_requests:
            return max(0.0, hits[0] + self.window - now)
        hits.append(now)
        return 0.0

    def _purge(self, cutoff: float) -> None:
        # callers whose newest hit left the window
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]

    def reset(self) -> None:
        self._hits.clear()


__all__ = ["SlidingWindowLimiter"]
