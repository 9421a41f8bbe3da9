from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import aiosqlite

from ..moderation.models import (
    AutomaticActionKind,
    ModerationAction,
    ModerationActionType,
    ModerationResult,
)
from ..utils import from_iso, to_iso
from .base import BaseService

_ACTION_COLUMNS = "id, content_id, queue_item_id, moderator_id, action, reason, notes, review_seconds, created_at_iso"

_HUMAN_REJECTIONS = (
    ModerationActionType.REJECT.value,
    ModerationActionType.DELETE.value,
    ModerationActionType.BAN.value,
)


@dataclass(frozen=True)
class AuditedResult:
    id: int
    result: ModerationResult
    author_id: str
    automatic_action: Optional[AutomaticActionKind]
    action_reason: Optional[str]
    source: str


@dataclass(frozen=True)
class ModeratorActionSummary:
    total: int
    approved: int
    rejected: int
    average_review_seconds: int


@dataclass(frozen=True)
class AutomaticSummary:
    total: int
    auto_approved: int
    auto_flagged: int
    auto_rejected: int


@dataclass(frozen=True)
class AgreementSummary:
    judged: int
    confirmed: int
    auto_positive: int
    false_positive: int


class ModerationAuditStore(BaseService[ModerationAction]):
    """Audit trail: classification results, moderator decisions and side-effect events."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderation_results (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              content_id TEXT NOT NULL,
              content_type TEXT NOT NULL,
              author_id TEXT NOT NULL,
              status TEXT NOT NULL,
              severity TEXT NOT NULL,
              confidence REAL NOT NULL,
              automatic_action TEXT,
              action_reason TEXT,
              source TEXT NOT NULL,
              result_json TEXT NOT NULL,
              created_at_iso TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderation_actions (
              id TEXT PRIMARY KEY,
              content_id TEXT NOT NULL,
              queue_item_id TEXT,
              moderator_id TEXT NOT NULL,
              action TEXT NOT NULL,
              reason TEXT NOT NULL,
              notes TEXT,
              review_seconds INTEGER,
              created_at_iso TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderation_events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              content_id TEXT,
              user_id TEXT,
              event_type TEXT NOT NULL,
              status TEXT NOT NULL,
              created_at_iso TEXT NOT NULL,
              details_json TEXT NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_modresults_content ON moderation_results(content_id, id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_modresults_created ON moderation_results(source, created_at_iso)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_modactions_mod ON moderation_actions(moderator_id, created_at_iso)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_modactions_content ON moderation_actions(content_id, created_at_iso)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_modevents_content ON moderation_events(content_id, id)")

    def _from_row(self, row: aiosqlite.Row) -> ModerationAction:
        return ModerationAction(
            id=str(row["id"]),
            content_id=str(row["content_id"]),
            moderator_id=str(row["moderator_id"]),
            action=ModerationActionType(row["action"]),
            reason=str(row["reason"]),
            notes=row["notes"],
            created_at=from_iso(row["created_at_iso"]),
            queue_item_id=row["queue_item_id"],
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_ACTION_COLUMNS} FROM moderation_actions WHERE id = ?"

    async def record_result(
        self,
        result: ModerationResult,
        *,
        author_id: str,
        automatic_action: Optional[AutomaticActionKind],
        action_reason: Optional[str],
        source: str = "automatic",
    ) -> int:
        result_json = json.dumps(result.to_dict(), separators=(",", ":"), ensure_ascii=False)

        async def _do() -> int:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    """
                    INSERT INTO moderation_results (
                      content_id, content_type, author_id, status, severity, confidence,
                      automatic_action, action_reason, source, result_json, created_at_iso
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.content_id,
                        result.content_type.value,
                        author_id,
                        result.status.value,
                        result.severity.value,
                        result.confidence,
                        automatic_action.value if automatic_action else None,
                        action_reason,
                        source,
                        result_json,
                        to_iso(result.created_at),
                    ),
                )
                await db.commit()
                return int(cur.lastrowid)

        return await self._write(_do, what="record_result")

    async def latest_result(self, content_id: str) -> Optional[AuditedResult]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, author_id, automatic_action, action_reason, source, result_json
                FROM moderation_results WHERE content_id = ? ORDER BY id DESC LIMIT 1
                """,
                (content_id,),
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        return AuditedResult(
            id=int(row["id"]),
            result=ModerationResult.from_dict(json.loads(row["result_json"])),
            author_id=str(row["author_id"]),
            automatic_action=AutomaticActionKind(row["automatic_action"]) if row["automatic_action"] else None,
            action_reason=row["action_reason"],
            source=str(row["source"]),
        )

    async def add_action(self, action: ModerationAction, *, review_seconds: Optional[int] = None) -> None:
        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    f"INSERT INTO moderation_actions ({_ACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        action.id,
                        action.content_id,
                        action.queue_item_id,
                        action.moderator_id,
                        action.action.value,
                        action.reason,
                        action.notes,
                        review_seconds,
                        to_iso(action.created_at),
                    ),
                )
                await db.commit()

        await self._write(_do, what="add_action")

    async def actions_for_content(self, content_id: str) -> list[ModerationAction]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_ACTION_COLUMNS} FROM moderation_actions WHERE content_id = ? ORDER BY created_at_iso, id",
                (content_id,),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def add_event(
        self,
        *,
        event_type: str,
        status: str,
        created_at_iso: str,
        details: dict[str, Any],
        content_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        details_json = json.dumps(details, separators=(",", ":"), ensure_ascii=False, default=str)

        async def _do() -> int:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    """
                    INSERT INTO moderation_events (content_id, user_id, event_type, status, created_at_iso, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (content_id, user_id, event_type, status, created_at_iso, details_json),
                )
                await db.commit()
                return int(cur.lastrowid)

        return await self._write(_do, what="add_event")

    async def events_for_content(self, content_id: str) -> list[dict[str, Any]]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, content_id, user_id, event_type, status, created_at_iso, details_json
                FROM moderation_events WHERE content_id = ? ORDER BY id
                """,
                (content_id,),
            ) as cur:
                rows = await cur.fetchall()
        return [
            {
                "id": int(r["id"]),
                "content_id": r["content_id"],
                "user_id": r["user_id"],
                "event_type": r["event_type"],
                "status": r["status"],
                "created_at_iso": r["created_at_iso"],
                "details": json.loads(r["details_json"]),
            }
            for r in rows
        ]

    # Aggregations over the audit trail

    async def moderator_summary(self, moderator_id: str, since: Optional[datetime]) -> ModeratorActionSummary:
        sql = """
            SELECT action, COUNT(*) AS n, AVG(review_seconds) AS avg_s
            FROM moderation_actions WHERE moderator_id = ?
        """
        params: list = [moderator_id]
        if since is not None:
            sql += " AND created_at_iso >= ?"
            params.append(to_iso(since))
        sql += " GROUP BY action"
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, tuple(params)) as cur:
                rows = await cur.fetchall()

        counts = {str(r["action"]): int(r["n"]) for r in rows}
        resolving = [a.value for a in ModerationActionType if a.resolves]
        total = sum(counts.get(a, 0) for a in resolving)
        weighted = sum(
            float(r["avg_s"]) * int(r["n"]) for r in rows if r["avg_s"] is not None and str(r["action"]) in resolving
        )
        timed = sum(int(r["n"]) for r in rows if r["avg_s"] is not None and str(r["action"]) in resolving)
        return ModeratorActionSummary(
            total=total,
            approved=counts.get(ModerationActionType.APPROVE.value, 0),
            rejected=sum(counts.get(a, 0) for a in _HUMAN_REJECTIONS),
            average_review_seconds=int(round(weighted / timed)) if timed else 0,
        )

    async def count_resolutions_since(self, moderator_id: str, since: datetime) -> int:
        resolving = tuple(a.value for a in ModerationActionType if a.resolves)
        marks = ",".join("?" for _ in resolving)
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(
                f"SELECT COUNT(*) FROM moderation_actions WHERE moderator_id = ? AND created_at_iso >= ? AND action IN ({marks})",
                (moderator_id, to_iso(since), *resolving),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] or 0)

    async def automatic_summary(self, since: Optional[datetime]) -> AutomaticSummary:
        sql = "SELECT automatic_action, COUNT(*) FROM moderation_results WHERE source = 'automatic'"
        params: tuple = ()
        if since is not None:
            sql += " AND created_at_iso >= ?"
            params = (to_iso(since),)
        sql += " GROUP BY automatic_action"
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
        counts = {str(k): int(n) for k, n in rows}
        return AutomaticSummary(
            total=sum(counts.values()),
            auto_approved=counts.get(AutomaticActionKind.AUTO_APPROVE.value, 0),
            auto_flagged=counts.get(AutomaticActionKind.AUTO_FLAG.value, 0),
            auto_rejected=counts.get(AutomaticActionKind.AUTO_REJECT.value, 0),
        )

    async def agreement_summary(self, since: Optional[datetime]) -> AgreementSummary:
        """Compare human resolutions with the automatic decision for the same content.

        A resolution confirms the automatic decision when an auto flag or
        reject was upheld (reject, delete, ban) or an auto approval was approved.
        """

        sql = """
            SELECT m.action AS human, r.automatic_action AS auto
            FROM moderation_actions m
            JOIN moderation_results r ON r.id = (
              SELECT id FROM moderation_results
              WHERE content_id = m.content_id AND source = 'automatic' AND created_at_iso <= m.created_at_iso
              ORDER BY id DESC LIMIT 1
            )
            WHERE m.action IN ('approve', 'reject', 'delete', 'ban')
        """
        params: tuple = ()
        if since is not None:
            sql += " AND m.created_at_iso >= ?"
            params = (to_iso(since),)
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()

        judged = confirmed = auto_positive = false_positive = 0
        for human, auto in rows:
            if auto is None:
                continue
            judged += 1
            upheld = human in _HUMAN_REJECTIONS
            if auto == AutomaticActionKind.AUTO_APPROVE.value:
                confirmed += int(not upheld)
            else:
                auto_positive += 1
                confirmed += int(upheld)
                false_positive += int(not upheld)
        return AgreementSummary(
            judged=judged,
            confirmed=confirmed,
            auto_positive=auto_positive,
            false_positive=false_positive,
        )

    async def count_human_resolutions(self, since: Optional[datetime]) -> int:
        sql = "SELECT COUNT(*) FROM moderation_actions WHERE action IN ('approve', 'reject', 'delete', 'ban')"
        params: tuple = ()
        if since is not None:
            sql += " AND created_at_iso >= ?"
            params = (to_iso(since),)
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(sql, params) as cur:
                row = await cur.fetchone()
        return int(row[0] or 0)
