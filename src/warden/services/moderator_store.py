from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import aiosqlite

from ..moderation.models import Moderator, ModeratorRole
from ..utils import from_iso, to_iso
from .base import BaseService


@dataclass(frozen=True)
class Assignment:
    id: int
    content_id: str
    queue_item_id: Optional[str]
    moderator_id: str
    assigned_at: datetime
    completed_at: Optional[datetime]
    outcome: Optional[str]


class ModeratorStore(BaseService[Moderator]):
    """Moderator roster plus assignment history.

    Roster lookups sit on every decision path, so they are cached briefly;
    writes invalidate the cached entry.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderators (
              id TEXT PRIMARY KEY,
              username TEXT NOT NULL,
              role TEXT NOT NULL,
              is_active INTEGER NOT NULL DEFAULT 1,
              joined_at_iso TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderator_assignments (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              content_id TEXT NOT NULL,
              queue_item_id TEXT,
              moderator_id TEXT NOT NULL,
              assigned_at_iso TEXT NOT NULL,
              completed_at_iso TEXT,
              outcome TEXT
            )
            """
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_modassign_mod ON moderator_assignments(moderator_id, completed_at_iso)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_modassign_content ON moderator_assignments(content_id, completed_at_iso)"
        )

    def _from_row(self, row: aiosqlite.Row) -> Moderator:
        return Moderator(
            id=str(row["id"]),
            username=str(row["username"]),
            role=ModeratorRole(row["role"]),
            is_active=bool(row["is_active"]),
            joined_at=from_iso(row["joined_at_iso"]),
        )

    @property
    def _get_query(self) -> str:
        return "SELECT id, username, role, is_active, joined_at_iso FROM moderators WHERE id = ?"

    async def upsert(self, moderator: Moderator) -> None:
        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    """
                    INSERT INTO moderators (id, username, role, is_active, joined_at_iso)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                      username = excluded.username,
                      role = excluded.role,
                      is_active = excluded.is_active
                    """,
                    (
                        moderator.id,
                        moderator.username,
                        moderator.role.value,
                        int(moderator.is_active),
                        to_iso(moderator.joined_at),
                    ),
                )
                await db.commit()

        await self._write(_do, what="upsert")
        self._cache.invalidate(moderator.id)

    async def set_active(self, moderator_id: str, active: bool) -> bool:
        async def _do() -> bool:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    "UPDATE moderators SET is_active = ? WHERE id = ?",
                    (int(active), moderator_id),
                )
                changed = cur.rowcount
                await db.commit()
                return changed > 0

        changed = await self._write(_do, what="set_active")
        self._cache.invalidate(moderator_id)
        return changed

    async def list_active(self) -> list[Moderator]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT id, username, role, is_active, joined_at_iso FROM moderators WHERE is_active = 1 ORDER BY joined_at_iso, id"
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def assign(
        self,
        *,
        content_id: str,
        queue_item_id: Optional[str],
        moderator_id: str,
        assigned_at: datetime,
    ) -> int:
        """Open an assignment; any open assignment of the content to someone else is closed as reassigned."""

        async def _do() -> int:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    """
                    UPDATE moderator_assignments SET completed_at_iso = ?, outcome = 'reassigned'
                    WHERE content_id = ? AND completed_at_iso IS NULL AND moderator_id <> ?
                    """,
                    (to_iso(assigned_at), content_id, moderator_id),
                )
                async with db.execute(
                    "SELECT id FROM moderator_assignments WHERE content_id = ? AND moderator_id = ? AND completed_at_iso IS NULL",
                    (content_id, moderator_id),
                ) as cur:
                    existing = await cur.fetchone()
                if existing is not None:
                    await db.commit()
                    return int(existing[0])
                cur = await db.execute(
                    """
                    INSERT INTO moderator_assignments (content_id, queue_item_id, moderator_id, assigned_at_iso)
                    VALUES (?, ?, ?, ?)
                    """,
                    (content_id, queue_item_id, moderator_id, to_iso(assigned_at)),
                )
                await db.commit()
                return int(cur.lastrowid)

        return await self._write(_do, what="assign")

    async def open_assignment(self, content_id: str, moderator_id: str) -> Optional[Assignment]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, content_id, queue_item_id, moderator_id, assigned_at_iso, completed_at_iso, outcome
                FROM moderator_assignments
                WHERE content_id = ? AND moderator_id = ? AND completed_at_iso IS NULL
                ORDER BY id DESC LIMIT 1
                """,
                (content_id, moderator_id),
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        return Assignment(
            id=int(row["id"]),
            content_id=str(row["content_id"]),
            queue_item_id=row["queue_item_id"],
            moderator_id=str(row["moderator_id"]),
            assigned_at=from_iso(row["assigned_at_iso"]),
            completed_at=from_iso(row["completed_at_iso"]),
            outcome=row["outcome"],
        )

    async def complete_for_content(self, content_id: str, *, outcome: str, completed_at: datetime) -> int:
        async def _do() -> int:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    """
                    UPDATE moderator_assignments SET completed_at_iso = ?, outcome = ?
                    WHERE content_id = ? AND completed_at_iso IS NULL
                    """,
                    (to_iso(completed_at), outcome, content_id),
                )
                changed = cur.rowcount
                await db.commit()
                return changed

        return await self._write(_do, what="complete_for_content")

    async def count_open_assignments(self, moderator_id: str) -> int:
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM moderator_assignments WHERE moderator_id = ? AND completed_at_iso IS NULL",
                (moderator_id,),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] or 0)
