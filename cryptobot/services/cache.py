"""In-process TTL cache for rolling per-pair market state.

Writers (event processor, indicator refresh) and readers (strategy, risk, API)
share one instance that is passed in explicitly. Values are replaced whole,
never mutated in place, so readers always see a complete entry. Writers that
read-modify-write a key hold `lock(key)` for the duration.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class _Entry:
    value: Any
    expires_at: float | None


class TTLCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str, default=None):
        entry = self._data.get(key)
        if entry is None:
            return default
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._data[key]
            return default
        return entry.value

    def set(self, key: str, value, ttl: float | None = None):
        """Store `value`; `ttl` in seconds, None = no expiry."""
        expires_at = self._clock() + ttl if ttl is not None else None
        self._data[key] = _Entry(value, expires_at)

    def delete(self, key: str):
        self._data.pop(key, None)

    def ttl(self, key: str) -> float | None:
        """Seconds until `key` expires; None when missing or non-expiring."""
        entry = self._data.get(key)
        if entry is None or entry.expires_at is None:
            return None
        return max(0.0, entry.expires_at - self._clock())

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def lock(self, key: str) -> asyncio.Lock:
        """Per-key lock serializing read-modify-write updates."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._data.items() if e.expires_at is not None and now >= e.expires_at]
        for key in expired:
            del self._data[key]
        return len(expired)


_MISSING = object()
