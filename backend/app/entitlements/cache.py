"""Tagged TTL caches for plan listings and entitlement lookups."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Generic, Iterable, Optional, Protocol, Set, TypeVar

V = TypeVar("V")


class TaggedCache(Protocol[V]):
    """Protocol describing cache operations used by the billing services."""

    def get(self, key: str) -> Optional[V]:
        ...

    def set(self, key: str, value: V, *, tags: Iterable[str] = ()) -> None:
        ...

    def invalidate(self, tags: Iterable[str]) -> None:
        ...

    def clear(self) -> None:
        ...


@dataclass
class _CacheEntry(Generic[V]):
    value: V
    expires_at: datetime
    tags: Set[str]

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class InMemoryTTLCache(Generic[V]):
    """Thread-safe in-memory cache; entries expire ``ttl_seconds`` after being set."""

    def __init__(
        self,
        ttl_seconds: int,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._ttl = timedelta(seconds=max(ttl_seconds, 0))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, _CacheEntry[V]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            if entry.is_expired(now):
                self._entries.pop(key, None)
                return None
            return entry.value

    def set(self, key: str, value: V, *, tags: Iterable[str] = ()) -> None:
        expires_at = self._clock() + self._ttl
        if not self._ttl:
            return
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=expires_at, tags=set(tags))

    def invalidate(self, tags: Iterable[str]) -> None:
        tag_set = set(tags)
        if not tag_set:
            return
        with self._lock:
            keys_to_delete = [
                key
                for key, entry in self._entries.items()
                if entry.tags.intersection(tag_set)
            ]
            for key in keys_to_delete:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
