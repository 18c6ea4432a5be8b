"""Token bucket guarding the platform's per-minute request budget."""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque


class TokenBucket:
    """Refilling bucket of ``capacity`` tokens per ``window_seconds``.

    ``acquire`` never blocks: it reserves a token and returns how long the
    caller must wait before using it. Reservations are also recorded in a
    sliding window so that no more than ``capacity`` calls are granted in any
    ``window_seconds`` span, even right after the bucket has refilled.
    """

    def __init__(self, capacity: int, window_seconds: float = 60.0):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.capacity = capacity
        self.window_seconds = float(window_seconds)
        self._rate = capacity / self.window_seconds
        self._tokens = float(capacity)
        self._last_refill: float | None = None
        self._grants: Deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def tokens(self) -> float:
        with self._lock:
            return self._tokens

    def _refill(self, now: float) -> None:
        if self._last_refill is None:
            self._last_refill = now
            return
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self._rate)
            self._last_refill = now

    def acquire(self, now: float) -> float:
        """Reserve one token at time ``now`` and return the wait in seconds."""
        with self._lock:
            self._refill(now)

            wait = 0.0
            if self._tokens < 1:
                wait = (1 - self._tokens) / self._rate

            horizon = now - self.window_seconds
            while self._grants and self._grants[0] <= horizon:
                self._grants.popleft()
            if len(self._grants) >= self.capacity:
                oldest_in_window = self._grants[-self.capacity]
                wait = max(wait, oldest_in_window + self.window_seconds - now)
            if self._grants and self._grants[-1] > now + wait:
                # keep reservations FIFO
                wait = self._grants[-1] - now

            self._tokens -= 1
            self._grants.append(now + wait)
            return wait
