"""In-process read-through cache with stale-on-error fallback."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Generic, Hashable, MutableMapping, TypeVar

from loguru import logger


T = TypeVar("T")

SOURCE_FRESH = "fresh"
SOURCE_CACHE = "cache"
SOURCE_STALE = "stale"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class CacheLookup(Generic[T]):
    value: T
    source: str
    cached_at: datetime


@dataclass(slots=True)
class _CacheEntry:
    value: Any
    cached_at: datetime
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


class ReadThroughCache:
    """Caches loader results per key for a TTL.

    When a refresh fails and an expired entry is still held, the expired value
    is served with ``source="stale"``; without one the loader error propagates.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._entries: MutableMapping[Hashable, _CacheEntry] = {}
        self._locks: MutableMapping[Hashable, asyncio.Lock] = {}

    async def get_or_compute(
        self,
        key: Hashable,
        ttl: timedelta,
        loader: Callable[[], Awaitable[T]],
    ) -> CacheLookup[T]:
        cached = self._entries.get(key)
        if cached and cached.is_valid(self._clock()):
            return CacheLookup(value=cached.value, source=SOURCE_CACHE, cached_at=cached.cached_at)

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._entries.get(key)
            if cached and cached.is_valid(self._clock()):
                return CacheLookup(value=cached.value, source=SOURCE_CACHE, cached_at=cached.cached_at)

            try:
                value = await loader()
            except Exception:
                if cached is None:
                    raise
                logger.exception("Cache refresh failed; serving stale value", key=str(key))
                return CacheLookup(value=cached.value, source=SOURCE_STALE, cached_at=cached.cached_at)

            now = self._clock()
            self._entries[key] = _CacheEntry(value=value, cached_at=now, expires_at=now + ttl)
            return CacheLookup(value=value, source=SOURCE_FRESH, cached_at=now)

    def invalidate(self, key: Hashable | None = None) -> None:
        """Drop one key, or the whole cache when ``key`` is ``None``."""

        if key is None:
            self._entries.clear()
            return
        self._entries.pop(key, None)
