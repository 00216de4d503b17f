"""Process-wide time-based cache.

Entries expire after a fixed lifetime and the cache is invalidated as a
whole after any write. There is no single-flight protection: two cold
readers may both go upstream.
"""

import time
from collections.abc import Callable
from typing import Any


class TTLCache:
    """Key/value cache whose entries expire after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing or stale."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def age(self, key: str) -> float | None:
        """Seconds since ``key`` was stored, or None if not cached."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._clock() - entry[0]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
