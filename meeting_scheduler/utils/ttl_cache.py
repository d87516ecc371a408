"""Bounded in-process cache with per-entry expiry."""

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Hashable, Iterator, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Insertion-ordered cache that expires entries after ``ttl_seconds``.

    When full, the oldest ``evict_fraction`` of entries is dropped in one go.
    """

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        evict_fraction: float = 0.2,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.evict_fraction = evict_fraction
        self.clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: Hashable, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            self._evict()
        self._entries[key] = (self.clock() + self.ttl_seconds, value)

    def pop(self, key: Hashable) -> Optional[V]:
        entry = self._entries.pop(key, None)
        return entry[1] if entry else None

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def _evict(self) -> None:
        now = self.clock()
        for key in [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]:
            del self._entries[key]
        if len(self._entries) < self.max_size:
            return
        count = max(1, int(self.max_size * self.evict_fraction))
        for _ in range(count):
            self._entries.popitem(last=False)

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self.clock() < entry[0]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Hashable]:
        return iter(list(self._entries))

    def stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
        }
