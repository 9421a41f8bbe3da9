from __future__ import annotations

import aiosqlite

from ..moderation.models import FlaggingStatistics
from .base import BaseService

COUNTER_COLUMNS = (
    "total_processed",
    "auto_approved",
    "auto_flagged",
    "auto_rejected",
    "sent_to_human_review",
    "pii_detected",
)


class FlaggingStatsStore(BaseService[FlaggingStatistics]):
    """Aggregate flagging counters in a single row.

    Every increment is one UPDATE statement, so concurrent writers from
    any process never lose an update.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        cols = ",\n".join(f"  {c} INTEGER NOT NULL DEFAULT 0" for c in COUNTER_COLUMNS)
        await db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS flagging_statistics (
              id INTEGER PRIMARY KEY CHECK (id = 1),
            {cols}
            )
            """
        )
        await db.execute("INSERT OR IGNORE INTO flagging_statistics (id) VALUES (1)")

    def _from_row(self, row: aiosqlite.Row) -> FlaggingStatistics:
        return FlaggingStatistics(**{c: int(row[c]) for c in COUNTER_COLUMNS})

    @property
    def _get_query(self) -> str:
        return f"SELECT {', '.join(COUNTER_COLUMNS)} FROM flagging_statistics WHERE id = ?"

    async def load(self) -> FlaggingStatistics:
        stats = await self.get(1)
        return stats if stats is not None else FlaggingStatistics()

    async def increment(self, counters: dict[str, int]) -> None:
        unknown = set(counters) - set(COUNTER_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown counters: {sorted(unknown)}")
        items = [(c, int(n)) for c, n in counters.items() if n]
        if not items:
            return
        assignments = ", ".join(f"{c} = {c} + ?" for c, _ in items)

        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    f"UPDATE flagging_statistics SET {assignments} WHERE id = 1",
                    tuple(n for _, n in items),
                )
                await db.commit()

        await self._write(_do, what="increment")

    async def reset(self) -> None:
        zeroes = ", ".join(f"{c} = 0" for c in COUNTER_COLUMNS)

        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(f"UPDATE flagging_statistics SET {zeroes} WHERE id = 1")
                await db.commit()

        await self._write(_do, what="reset")
