"""In-memory TTL cache for transformed upstream payloads."""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    keys: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class CacheStore:
    """Process-local key/value store with a single TTL for every entry.

    Expiry is lazy: ``get`` drops a stale entry and reports a miss. ``prune``
    sweeps all stale entries at once. All operations hold one lock, so the
    store is safe to share across the event loop and worker threads.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                entry = None
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any) -> None:
        now = self._clock()
        entry = CacheEntry(value=value, stored_at=now, expires_at=now + self.ttl_seconds)
        with self._lock:
            self._entries[key] = entry

    def flush_all(self) -> None:
        with self._lock:
            self._entries = {}

    def prune(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(hits=self._hits, misses=self._misses, keys=len(self._entries))

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)
