from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import aiosqlite

from ..errors import ConsistencyError
from .cache import TTLCache

T = TypeVar("T")
R = TypeVar("R")
log = logging.getLogger("warden.base_service")


def is_lock_conflict(exc: BaseException) -> bool:
    if not isinstance(exc, aiosqlite.OperationalError):
        return False
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


async def retry_locked(
    coro_fn: Callable[[], Awaitable[R]],
    *,
    attempts: int = 3,
    base_delay: float = 0.05,
    what: str = "write",
) -> R:
    """Run `coro_fn`, retrying SQLite lock conflicts with exponential backoff.

    Other errors propagate immediately. After `attempts` conflicts the last
    one is surfaced as `ConsistencyError`.
    """

    attempts = max(1, int(attempts))
    last: Optional[BaseException] = None
    for t in range(attempts):
        try:
            return await coro_fn()
        except aiosqlite.OperationalError as e:
            if not is_lock_conflict(e):
                raise
            last = e
            log.warning("%s conflicted (attempt %d/%d): %s", what, t + 1, attempts, e)
            if t + 1 < attempts:
                await asyncio.sleep(base_delay * (2**t))
    raise ConsistencyError(f"{what} kept conflicting after {attempts} attempts") from last


class BaseService(ABC, Generic[T]):
    """Base class for all SQLite-backed stores."""

    def __init__(self, sqlite_path: str, *, write_attempts: int = 3, cache_ttl_seconds: float = 0) -> None:
        self._path = sqlite_path
        self._write_attempts = max(1, int(write_attempts))
        self._cache: TTLCache[Any, T] = TTLCache(default_ttl_seconds=cache_ttl_seconds)
        self._logger = logging.getLogger(f"warden.{self.__class__.__name__.lower()}")

    async def init(self) -> None:
        """Initialize the database schema."""
        async with aiosqlite.connect(self._path) as db:
            await self._create_tables(db)
            await db.commit()

    @abstractmethod
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        """Create the necessary database tables."""

    @abstractmethod
    def _from_row(self, row: aiosqlite.Row) -> T:
        """Convert a database row to the store's data type."""

    @property
    @abstractmethod
    def _get_query(self) -> str:
        """SQL query for getting a record by key."""

    async def get(self, key: Any) -> Optional[T]:
        """Get cached data or fetch from database."""
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(self._get_query, (key,)) as cur:
                row = await cur.fetchone()
                if row is None:
                    return None

                data = self._from_row(row)
                self._cache.set(key, data)
                return data

    async def _write(self, coro_fn: Callable[[], Awaitable[R]], *, what: str) -> R:
        return await retry_locked(coro_fn, attempts=self._write_attempts, what=f"{self.__class__.__name__}.{what}")
