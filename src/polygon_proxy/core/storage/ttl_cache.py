import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional


@dataclass
class CacheEntry:
    key: Hashable
    value: Any
    expires_at: float


class TTLCache:
    """
    In-memory key/value store with per-entry expiry and a capacity bound.

    Expiry is enforced lazily: an entry is visible while ``now < expires_at``
    and is dropped on the first read after that. When the cache is full and a
    new key arrives, the entry closest to expiry is evicted (linear scan,
    fine for the few thousand entries this holds).

    Safe to share between Flask worker threads and the event loop.
    """

    def __init__(
        self,
        capacity: int = 5000,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return default
            return entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.capacity:
                self._evict_nearest_expiry()
            self._entries[key] = CacheEntry(key, value, self._clock() + ttl)

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict_nearest_expiry(self) -> None:
        # caller holds the lock
        victim = min(self._entries.values(), key=lambda e: e.expires_at)
        del self._entries[victim.key]

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        # physical size, expired entries included until read or evicted
        return len(self._entries)


_MISSING = object()
