from __future__ import annotations

from datetime import datetime
from typing import Optional

import aiosqlite

from ..moderation.models import Appeal, AppealDecision, AppealStatus
from ..utils import from_iso, to_iso
from .base import BaseService
from .penalty_store import reverse_tied_penalties

_COLUMNS = (
    "id, user_id, content_id, moderation_action_id, reason, evidence, status, submitted_at_iso, "
    "decision, decision_reason, reviewed_by, reviewed_at_iso"
)


class AppealStore(BaseService[Appeal]):
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS appeals (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              content_id TEXT NOT NULL,
              moderation_action_id TEXT NOT NULL,
              reason TEXT NOT NULL,
              evidence TEXT,
              status TEXT NOT NULL,
              submitted_at_iso TEXT NOT NULL,
              decision TEXT,
              decision_reason TEXT,
              reviewed_by TEXT,
              reviewed_at_iso TEXT
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_appeals_status ON appeals(status, submitted_at_iso)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_appeals_user ON appeals(user_id)")

    def _from_row(self, row: aiosqlite.Row) -> Appeal:
        return Appeal(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            content_id=str(row["content_id"]),
            moderation_action_id=str(row["moderation_action_id"]),
            reason=str(row["reason"]),
            evidence=row["evidence"],
            status=AppealStatus(row["status"]),
            submitted_at=from_iso(row["submitted_at_iso"]),
            decision=AppealDecision(row["decision"]) if row["decision"] else None,
            decision_reason=row["decision_reason"],
            reviewed_by=row["reviewed_by"],
            reviewed_at=from_iso(row["reviewed_at_iso"]),
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_COLUMNS} FROM appeals WHERE id = ?"

    async def add(self, appeal: Appeal) -> None:
        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    """
                    INSERT INTO appeals (
                      id, user_id, content_id, moderation_action_id, reason, evidence, status, submitted_at_iso
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        appeal.id,
                        appeal.user_id,
                        appeal.content_id,
                        appeal.moderation_action_id,
                        appeal.reason,
                        appeal.evidence,
                        appeal.status.value,
                        to_iso(appeal.submitted_at),
                    ),
                )
                await db.commit()

        await self._write(_do, what="add")

    async def decide(
        self,
        appeal_id: str,
        *,
        decision: AppealDecision,
        decision_reason: str,
        reviewed_by: str,
        reviewed_at: datetime,
    ) -> tuple[bool, list[str]]:
        """Record a decision on a pending appeal.

        Returns (decided, reversed_penalty_ids). On approval the tied
        penalties are reversed in the same transaction as the status change.
        """

        async def _do() -> tuple[bool, list[str]]:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    """
                    UPDATE appeals
                    SET status = ?, decision = ?, decision_reason = ?, reviewed_by = ?, reviewed_at_iso = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        decision.value,
                        decision.value,
                        decision_reason,
                        reviewed_by,
                        to_iso(reviewed_at),
                        appeal_id,
                        AppealStatus.PENDING.value,
                    ),
                )
                if cur.rowcount == 0:
                    await db.rollback()
                    return False, []

                reversed_ids: list[str] = []
                if decision is AppealDecision.APPROVED:
                    async with db.execute(
                        "SELECT user_id, content_id, moderation_action_id FROM appeals WHERE id = ?",
                        (appeal_id,),
                    ) as c2:
                        user_id, content_id, action_id = await c2.fetchone()
                    reversed_ids = await reverse_tied_penalties(
                        db,
                        user_id=user_id,
                        content_id=content_id,
                        moderation_action_id=action_id,
                        removed_at=reviewed_at,
                        removed_by=reviewed_by,
                        reason=f"Appeal {appeal_id} approved: {decision_reason}",
                    )
                await db.commit()
                return True, reversed_ids

        return await self._write(_do, what="decide")

    async def list_pending(self, limit: int = 50) -> list[Appeal]:
        limit = max(1, min(500, int(limit)))
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_COLUMNS} FROM appeals WHERE status = ? ORDER BY submitted_at_iso, id LIMIT ?",
                (AppealStatus.PENDING.value, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def list_for_user(self, user_id: str) -> list[Appeal]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_COLUMNS} FROM appeals WHERE user_id = ? ORDER BY submitted_at_iso, id",
                (user_id,),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def count_overturned(self, moderator_id: str, since: Optional[datetime]) -> int:
        """Approved appeals against decisions made by `moderator_id`."""

        sql = """
            SELECT COUNT(*) FROM appeals a
            JOIN moderation_actions m ON m.id = a.moderation_action_id
            WHERE a.status = ? AND m.moderator_id = ?
        """
        params: list = [AppealStatus.APPROVED.value, moderator_id]
        if since is not None:
            sql += " AND a.reviewed_at_iso >= ?"
            params.append(to_iso(since))
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(sql, tuple(params)) as cur:
                row = await cur.fetchone()
        return int(row[0] or 0)
