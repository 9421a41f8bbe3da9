from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

import aiosqlite

from ..moderation.models import (
    ContentType,
    ModerationQueueItem,
    ModerationResult,
    ModerationStatus,
    Priority,
)
from ..utils import from_iso, to_iso
from .base import BaseService

_COLUMNS = (
    "id, content_id, content_type, author_id, content, image_urls_json, result_json, report_count, "
    "priority, status, escalated, assigned_to, created_at_iso, updated_at_iso, resolved_at_iso, "
    "resolved_by, resolution"
)


class QueueStore(BaseService[ModerationQueueItem]):
    """Durable review queue.

    Open items have `resolved_at_iso IS NULL`; resolved items stay in the
    table as an archive. At most one open item exists per content id.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderation_queue (
              id TEXT PRIMARY KEY,
              content_id TEXT NOT NULL,
              content_type TEXT NOT NULL,
              author_id TEXT NOT NULL,
              content TEXT,
              image_urls_json TEXT NOT NULL,
              result_json TEXT NOT NULL,
              report_count INTEGER NOT NULL DEFAULT 0,
              priority TEXT NOT NULL,
              status TEXT NOT NULL,
              escalated INTEGER NOT NULL DEFAULT 0,
              assigned_to TEXT,
              created_at_iso TEXT NOT NULL,
              updated_at_iso TEXT NOT NULL,
              resolved_at_iso TEXT,
              resolved_by TEXT,
              resolution TEXT
            )
            """
        )
        await db.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_modqueue_open_content ON moderation_queue(content_id) WHERE resolved_at_iso IS NULL"
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_modqueue_content ON moderation_queue(content_id, created_at_iso)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_modqueue_resolved ON moderation_queue(resolved_at_iso)")

    def _from_row(self, row: aiosqlite.Row) -> ModerationQueueItem:
        return ModerationQueueItem(
            id=str(row["id"]),
            content_id=str(row["content_id"]),
            content_type=ContentType(row["content_type"]),
            author_id=str(row["author_id"]),
            content=row["content"],
            image_urls=tuple(json.loads(row["image_urls_json"] or "[]")),
            moderation_result=ModerationResult.from_dict(json.loads(row["result_json"])),
            report_count=int(row["report_count"]),
            priority=Priority(row["priority"]),
            status=ModerationStatus(row["status"]),
            created_at=from_iso(row["created_at_iso"]),
            updated_at=from_iso(row["updated_at_iso"]),
            assigned_to=row["assigned_to"],
            escalated=bool(row["escalated"]),
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_COLUMNS} FROM moderation_queue WHERE id = ?"

    async def insert(self, item: ModerationQueueItem) -> None:
        """Insert an open item. Raises `aiosqlite.IntegrityError` if the content is already queued."""

        result_json = json.dumps(item.moderation_result.to_dict(), separators=(",", ":"), ensure_ascii=False)

        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    """
                    INSERT INTO moderation_queue (
                      id, content_id, content_type, author_id, content, image_urls_json, result_json,
                      report_count, priority, status, escalated, assigned_to, created_at_iso, updated_at_iso
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.id,
                        item.content_id,
                        item.content_type.value,
                        item.author_id,
                        item.content,
                        json.dumps(list(item.image_urls)),
                        result_json,
                        item.report_count,
                        item.priority.value,
                        item.status.value,
                        int(item.escalated),
                        item.assigned_to,
                        to_iso(item.created_at),
                        to_iso(item.updated_at),
                    ),
                )
                await db.commit()

        await self._write(_do, what="insert")

    async def get_open_for_content(self, content_id: str) -> Optional[ModerationQueueItem]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_COLUMNS} FROM moderation_queue WHERE content_id = ? AND resolved_at_iso IS NULL",
                (content_id,),
            ) as cur:
                row = await cur.fetchone()
        return self._from_row(row) if row else None

    async def has_resolved(self, content_id: str) -> bool:
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(
                "SELECT 1 FROM moderation_queue WHERE content_id = ? AND resolved_at_iso IS NOT NULL LIMIT 1",
                (content_id,),
            ) as cur:
                return (await cur.fetchone()) is not None

    async def list_open(self) -> list[ModerationQueueItem]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_COLUMNS} FROM moderation_queue WHERE resolved_at_iso IS NULL ORDER BY created_at_iso, id"
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def _update_open(self, sql: str, params: tuple, *, what: str) -> bool:
        async def _do() -> bool:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(sql, params)
                changed = cur.rowcount
                await db.commit()
                return changed > 0

        return await self._write(_do, what=what)

    async def update_state(
        self,
        item_id: str,
        *,
        status: ModerationStatus,
        assigned_to: Optional[str],
        updated_at: datetime,
    ) -> bool:
        return await self._update_open(
            "UPDATE moderation_queue SET status = ?, assigned_to = ?, updated_at_iso = ? WHERE id = ? AND resolved_at_iso IS NULL",
            (status.value, assigned_to, to_iso(updated_at), item_id),
            what="update_state",
        )

    async def update_reports(
        self,
        item_id: str,
        *,
        report_count: int,
        priority: Priority,
        escalated: bool,
        updated_at: datetime,
    ) -> bool:
        return await self._update_open(
            "UPDATE moderation_queue SET report_count = ?, priority = ?, escalated = ?, updated_at_iso = ? WHERE id = ? AND resolved_at_iso IS NULL",
            (report_count, priority.value, int(escalated), to_iso(updated_at), item_id),
            what="update_reports",
        )

    async def resolve(
        self,
        item_id: str,
        *,
        status: ModerationStatus,
        resolution: str,
        resolved_by: Optional[str],
        resolved_at: datetime,
    ) -> bool:
        """Archive an open item. Returns False if it was already resolved."""

        return await self._update_open(
            """
            UPDATE moderation_queue
            SET status = ?, resolution = ?, resolved_by = ?, resolved_at_iso = ?, updated_at_iso = ?
            WHERE id = ? AND resolved_at_iso IS NULL
            """,
            (status.value, resolution, resolved_by, to_iso(resolved_at), to_iso(resolved_at), item_id),
            what="resolve",
        )

    async def queue_times_since(self, since: Optional[datetime]) -> list[float]:
        """Seconds between enqueue and resolution for items resolved since `since`."""

        sql = "SELECT created_at_iso, resolved_at_iso FROM moderation_queue WHERE resolved_at_iso IS NOT NULL"
        params: tuple = ()
        if since is not None:
            sql += " AND resolved_at_iso >= ?"
            params = (to_iso(since),)
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
        out: list[float] = []
        for created, resolved in rows:
            delta = (from_iso(resolved) - from_iso(created)).total_seconds()
            out.append(max(0.0, delta))
        return out
