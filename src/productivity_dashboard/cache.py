from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional


@dataclass
class _CacheEntry:
    value: Any
    stored_at: float


class TTLCache:
    """
    Small in-process memo with a fixed time-to-live.

    Expired entries are evicted lazily on read. A ``ttl_seconds`` of 0 turns
    the cache into a pass-through.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[Hashable, _CacheEntry] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: Hashable, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[key] = _CacheEntry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def clear_matching(self, fragment: str) -> int:
        """Drop every entry whose key mentions ``fragment``; returns the count."""

        stale = [key for key in self._entries if fragment in _flatten_key(key)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


def _flatten_key(key: Hashable) -> str:
    if isinstance(key, tuple):
        return "|".join(str(part) for part in key)
    return str(key)
