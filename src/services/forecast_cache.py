from __future__ import annotations

import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    value: object
    expires_at: float


class FreshnessCache(Generic[T]):
    """Thread-safe TTL cache keyed by grid cell strings.

    A TTL of zero disables caching: ``set`` stores nothing and ``get`` always
    misses.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = max(ttl_seconds, 0.0)
        self._clock = clock
        self._lock = RLock()
        self._entries: Dict[str, CacheEntry] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value  # type: ignore[return-value]

    def set(self, key: str, value: T) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self._ttl)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
