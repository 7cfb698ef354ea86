from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol


class Cache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None: ...

    def invalidate(self, key: str) -> None: ...


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float | None


class InMemoryCache:
    """Process-local TTL cache.

    Entries without a ttl never expire. The clock is injectable so tests can
    advance time without sleeping.
    """

    def __init__(self, default_ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, _CacheEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=expires_at)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_CACHE_LOCK = threading.Lock()
_CACHE: Cache | None = None


def get_cache() -> Cache:
    global _CACHE
    with _CACHE_LOCK:
        if _CACHE is None:
            from app.core.config import get_settings

            _CACHE = InMemoryCache(default_ttl_seconds=get_settings().cache_ttl_seconds)
        return _CACHE


def set_cache(cache: Cache) -> None:
    global _CACHE
    with _CACHE_LOCK:
        _CACHE = cache
