from __future__ import annotations

import time
from typing import Callable, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")


class LookupCache(Generic[V]):
    """Key/value store for external lookups with an optional time-to-live.

    Only successful lookups should be stored; callers never cache a miss.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[V, Optional[float]]] = {}

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: Hashable, value: V) -> None:
        expires_at = None
        if self.ttl_seconds is not None:
            expires_at = self._clock() + self.ttl_seconds
        self._entries[key] = (value, expires_at)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
