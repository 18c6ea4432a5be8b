"""TTL cache used to coalesce identical platform reads."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Hashable, Tuple

MISS = object()


class ResponseCache:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any:
        """Return the cached value for ``key`` or ``MISS``. Expired entries are evicted."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISS
            value, stamp = entry
            if self._clock() - stamp >= self.ttl_seconds:
                del self._entries[key]
                return MISS
            return value

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
