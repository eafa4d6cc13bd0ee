"""In-memory TTL cache with bounded size.

Used for data keys and secrets. Instances are created by the application
wiring and passed into the components that need them, so every process (and
every test) starts with an empty cache and lifetime is explicit.

Eviction:
- Entries older than ttl_seconds are treated as absent and dropped on read
- When the cache is full, the oldest entry (by insertion time) is evicted
"""

import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any


@dataclass
class CacheEntry:
    """Cache entry with insertion time tracking."""

    value: Any
    stored_at: float


class TTLCache:
    """Thread-safe TTL cache with oldest-entry eviction.

    Args:
        ttl_seconds: How long an entry stays valid after insertion.
        max_entries: Maximum number of live entries.
        clock: Monotonic clock returning seconds (injectable for tests).
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: Hashable) -> Any | None:
        """Return the cached value, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() - entry.stored_at >= self.ttl_seconds:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: Hashable, value: Any) -> None:
        """Store a value, evicting the oldest entry if the cache is full."""
        with self._lock:
            # Re-inserting moves the key to the newest position
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                oldest_key = next(iter(self._entries))
                del self._entries[oldest_key]
                self._evictions += 1
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: Hashable) -> None:
        """Drop a single entry if present."""
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, int]:
        """Hit/miss/eviction counters and current size."""
        with self._lock:
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }
