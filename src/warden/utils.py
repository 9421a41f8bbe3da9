from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def from_iso(raw: Optional[str]) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    parsed = datetime.fromisoformat(str(raw))
    # Rows written before timezone handling was added carry naive timestamps.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class KeyedLocks:
    """One asyncio.Lock per key, created lazily.

    Serializes work on a single entity (a queue item, a user's penalties)
    without blocking unrelated entities.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def discard(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


async def retry_async(
    coro_fn: Callable[[], Awaitable[T]],
    *,
    tries: int = 3,
    base_delay: float = 0.5,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Bounded retry with exponential backoff for collaborator calls."""
    last: Optional[BaseException] = None
    for t in range(max(1, tries)):
        try:
            return await coro_fn()
        except retry_on as e:
            last = e
            if t + 1 < tries:
                await asyncio.sleep(base_delay * (2**t))
    raise last  # type: ignore[misc]
