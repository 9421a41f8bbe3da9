from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """In-memory TTL cache for hot read paths (moderator roster lookups).

    A ttl of 0 disables caching entirely.
    """

    def __init__(self, default_ttl_seconds: float = 60, *, timer: Callable[[], float] = time.monotonic) -> None:
        self._default_ttl = max(0.0, float(default_ttl_seconds))
        self._timer = timer
        self._store: dict[K, _Entry[V]] = {}

    @property
    def enabled(self) -> bool:
        return self._default_ttl > 0

    def get(self, key: K) -> Optional[V]:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._timer():
            self._store.pop(key, None)
            return None
        return entry.value

    def set(self, key: K, value: V) -> None:
        if not self.enabled:
            return
        self._store[key] = _Entry(value=value, expires_at=self._timer() + self._default_ttl)

    def invalidate(self, key: K) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)
