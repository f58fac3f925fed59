"""Keyed in-memory cache with explicit invalidation."""
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar('V')


@dataclass
class _CacheEntry(Generic[V]):
    value: V
    expires_at: Optional[float]


class KeyedCache(Generic[V]):
    """Maps keys to values until invalidated or, optionally, until a TTL passes.

    Owned by the component that uses it; invalidation is driven by the events
    that change the underlying data. A load that was in flight when its key was
    invalidated returns its value to the caller but does not cache it.
    """

    def __init__(self, ttl: Optional[float] = None):
        self.ttl = ttl
        self._entries: Dict[Hashable, _CacheEntry[V]] = {}
        self._generations: Dict[Hashable, int] = {}
        self._epoch = 0

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: Hashable, value: V) -> None:
        expires_at = time.monotonic() + self.ttl if self.ttl else None
        self._entries[key] = _CacheEntry(value=value, expires_at=expires_at)

    def _generation(self, key: Hashable) -> Tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[V]]) -> V:
        value = self.get(key)
        if value is None:
            generation = self._generation(key)
            value = await loader()
            if self._generation(key) == generation:
                self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1

    def clear(self) -> None:
        self._entries.clear()
        self._generations.clear()
        self._epoch += 1

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
