from __future__ import annotations

from datetime import datetime
from typing import Optional

import aiosqlite

from ..moderation.models import PenaltyKind, PenaltyType, UserPenalty
from ..utils import from_iso, to_iso
from .base import BaseService

_COLUMNS = (
    "id, user_id, moderator_id, content_id, moderation_action_id, penalty_kind, penalty_days, reason, "
    "applied_at_iso, expires_at_iso, removed_at_iso, removed_reason, removed_by"
)


async def reverse_tied_penalties(
    db: aiosqlite.Connection,
    *,
    user_id: str,
    content_id: str,
    moderation_action_id: str,
    removed_at: datetime,
    removed_by: Optional[str],
    reason: str,
) -> list[str]:
    """Mark the user's penalties tied to a decision as removed.

    Runs on the caller's connection so it commits or rolls back together
    with the caller's own writes.
    """

    async with db.execute(
        """
        SELECT id FROM user_penalties
        WHERE user_id = ? AND removed_at_iso IS NULL
          AND (moderation_action_id = ? OR content_id = ?)
        """,
        (user_id, moderation_action_id, content_id),
    ) as cur:
        ids = [str(r[0]) for r in await cur.fetchall()]

    reversed_ids: list[str] = []
    for pid in ids:
        cur = await db.execute(
            "UPDATE user_penalties SET removed_at_iso = ?, removed_reason = ?, removed_by = ? WHERE id = ? AND removed_at_iso IS NULL",
            (to_iso(removed_at), reason, removed_by, pid),
        )
        if cur.rowcount > 0:
            reversed_ids.append(pid)
    return reversed_ids


class PenaltyStore(BaseService[UserPenalty]):
    """Append-only penalty ledger. Removal is a marker, never a delete."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS user_penalties (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              moderator_id TEXT NOT NULL,
              content_id TEXT,
              moderation_action_id TEXT,
              penalty_kind TEXT NOT NULL,
              penalty_days INTEGER,
              reason TEXT NOT NULL,
              applied_at_iso TEXT NOT NULL,
              expires_at_iso TEXT,
              removed_at_iso TEXT,
              removed_reason TEXT,
              removed_by TEXT
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_penalties_user ON user_penalties(user_id, applied_at_iso)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_penalties_content ON user_penalties(content_id)")

    def _from_row(self, row: aiosqlite.Row) -> UserPenalty:
        days = row["penalty_days"]
        return UserPenalty(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            moderator_id=str(row["moderator_id"]),
            content_id=row["content_id"],
            penalty_type=PenaltyType(PenaltyKind(row["penalty_kind"]), int(days) if days is not None else None),
            reason=str(row["reason"]),
            applied_at=from_iso(row["applied_at_iso"]),
            expires_at=from_iso(row["expires_at_iso"]),
            moderation_action_id=row["moderation_action_id"],
            removed_at=from_iso(row["removed_at_iso"]),
            removed_reason=row["removed_reason"],
            removed_by=row["removed_by"],
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_COLUMNS} FROM user_penalties WHERE id = ?"

    async def add(self, penalty: UserPenalty) -> None:
        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    """
                    INSERT INTO user_penalties (
                      id, user_id, moderator_id, content_id, moderation_action_id, penalty_kind,
                      penalty_days, reason, applied_at_iso, expires_at_iso
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        penalty.id,
                        penalty.user_id,
                        penalty.moderator_id,
                        penalty.content_id,
                        penalty.moderation_action_id,
                        penalty.penalty_type.kind.value,
                        penalty.penalty_type.days,
                        penalty.reason,
                        to_iso(penalty.applied_at),
                        to_iso(penalty.expires_at),
                    ),
                )
                await db.commit()

        await self._write(_do, what="add")

    async def mark_removed(
        self,
        penalty_id: str,
        *,
        reason: str,
        removed_by: Optional[str],
        removed_at: datetime,
    ) -> bool:
        """Compare-and-set removal. Returns False if unknown or already removed."""

        async def _do() -> bool:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    "UPDATE user_penalties SET removed_at_iso = ?, removed_reason = ?, removed_by = ? WHERE id = ? AND removed_at_iso IS NULL",
                    (to_iso(removed_at), reason, removed_by, penalty_id),
                )
                changed = cur.rowcount
                await db.commit()
                return changed > 0

        return await self._write(_do, what="mark_removed")

    async def list_for_user(self, user_id: str, *, include_removed: bool = True) -> list[UserPenalty]:
        sql = f"SELECT {_COLUMNS} FROM user_penalties WHERE user_id = ?"
        if not include_removed:
            sql += " AND removed_at_iso IS NULL"
        sql += " ORDER BY applied_at_iso, id"
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, (user_id,)) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]
