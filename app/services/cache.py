import time
from typing import Callable, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """
    Small in-memory cache with per-entry expiry.
    Owned by whoever constructs it; nothing is shared at module level.
    """

    def __init__(self, ttl_seconds: float, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[K, tuple[V, float]] = {}

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: K, value: V) -> None:
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self.sweep()
            if len(self._entries) >= self.max_entries:
                # Evict the entry closest to expiry
                oldest = min(self._entries, key=lambda k: self._entries[k][1])
                del self._entries[oldest]
        self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def invalidate(self, key: Optional[K] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
