from __future__ import annotations

import aiosqlite

from .base import BaseService


class ModerationIdempotencyStore(BaseService):
    """Dedupe keys for side effects that must happen at most once.

    A key is claimed by inserting it; a second claim of the same key fails.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderation_idempotency (
              dedupe_key TEXT PRIMARY KEY,
              created_at_iso TEXT NOT NULL
            )
            """
        )

    def _from_row(self, row: aiosqlite.Row):
        return row

    @property
    def _get_query(self) -> str:
        return "SELECT dedupe_key, created_at_iso FROM moderation_idempotency WHERE dedupe_key = ?"

    async def claim(self, dedupe_key: str, created_at_iso: str) -> bool:
        """Try to claim a dedupe key. Returns True if newly claimed, False if already existed."""

        async def _do() -> bool:
            async with aiosqlite.connect(self._path) as db:
                try:
                    await db.execute(
                        "INSERT INTO moderation_idempotency (dedupe_key, created_at_iso) VALUES (?, ?)",
                        (dedupe_key, created_at_iso),
                    )
                    await db.commit()
                    return True
                except aiosqlite.IntegrityError:
                    return False

        return await self._write(_do, what="claim")

    async def release(self, dedupe_key: str) -> None:
        """Give a key back after the guarded side effect failed."""

        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                await db.execute("DELETE FROM moderation_idempotency WHERE dedupe_key = ?", (dedupe_key,))
                await db.commit()

        await self._write(_do, what="release")
