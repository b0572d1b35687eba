from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """Small in-memory cache with per-entry expiry.

    Owned by whoever constructs it; nothing here is module-level state.
    ``clock`` is injectable so expiry can be tested without sleeping.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = max(ttl_seconds, 0.0)
        self._clock = clock
        self._entries: dict[K, _Entry[V]] = {}

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for entry in self._entries.values() if entry.expires_at > now)


class CollectionDirectory:
    """Maps collection ids to titles, reloading the whole listing on expiry."""

    def __init__(
        self,
        loader: Callable[[], Iterable[tuple[str, str]]],
        *,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._cache: TTLCache[str, str] = TTLCache(ttl_seconds, clock=clock)
        self._loaded_at: float | None = None
        self._clock = clock

    def _expired(self) -> bool:
        if self._loaded_at is None:
            return True
        return self._clock() - self._loaded_at >= self._cache.ttl_seconds

    def refresh(self) -> int:
        self._cache.clear()
        count = 0
        for collection_id, title in self._loader():
            self._cache.set(collection_id, title)
            count += 1
        self._loaded_at = self._clock()
        logger.info("Loaded %d collections", count)
        return count

    def title_for(self, collection_id: str) -> str | None:
        if self._expired():
            self.refresh()
        return self._cache.get(collection_id)

    def invalidate(self) -> None:
        self._cache.clear()
        self._loaded_at = None
