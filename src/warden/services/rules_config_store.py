from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

import aiosqlite

from ..errors import NotFoundError, RulesValidationError
from ..moderation.config_schema import validate_rules
from .base import BaseService


@dataclass(frozen=True)
class RulesRevision:
    revision: int
    created_at_iso: str
    created_by: Optional[str]
    doc: dict[str, Any]


class RulesConfigStore(BaseService[RulesRevision]):
    """Versioned flagging rules.

    - `flagging_rules_revisions`: append-only revisions
    - `flagging_rules_state`: the published pointer
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS flagging_rules_revisions (
              revision INTEGER PRIMARY KEY,
              created_at_iso TEXT NOT NULL,
              created_by TEXT,
              doc_json TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS flagging_rules_state (
              id INTEGER PRIMARY KEY CHECK (id = 1),
              published_revision INTEGER NOT NULL
            )
            """
        )

    def _from_row(self, row: aiosqlite.Row) -> RulesRevision:
        return RulesRevision(
            revision=int(row["revision"]),
            created_at_iso=str(row["created_at_iso"]),
            created_by=row["created_by"],
            doc=json.loads(row["doc_json"]),
        )

    @property
    def _get_query(self) -> str:
        return "SELECT revision, created_at_iso, created_by, doc_json FROM flagging_rules_revisions WHERE revision = ?"

    async def ensure_initialized(self, default_doc: dict[str, Any], *, created_at_iso: str) -> None:
        """Seed revision 1 and publish it if nothing is published yet."""

        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                async with db.execute("SELECT published_revision FROM flagging_rules_state WHERE id = 1") as cur:
                    if await cur.fetchone():
                        return
                doc_json = json.dumps(default_doc, separators=(",", ":"), ensure_ascii=False)
                await db.execute(
                    "INSERT OR IGNORE INTO flagging_rules_revisions (revision, created_at_iso, created_by, doc_json) VALUES (1, ?, NULL, ?)",
                    (created_at_iso, doc_json),
                )
                await db.execute("INSERT OR IGNORE INTO flagging_rules_state (id, published_revision) VALUES (1, 1)")
                await db.commit()

        await self._write(_do, what="ensure_initialized")

    async def get_published(self) -> tuple[int, dict[str, Any]]:
        async with aiosqlite.connect(self._path) as db:
            async with db.execute("SELECT published_revision FROM flagging_rules_state WHERE id = 1") as cur:
                row = await cur.fetchone()
        if not row:
            raise RuntimeError("Flagging rules not initialized")
        rev = await self.get(int(row[0]))
        if rev is None:
            raise RuntimeError(f"Published revision {row[0]} is missing")
        return rev.revision, rev.doc

    async def publish_new(self, doc: dict[str, Any], *, created_at_iso: str, created_by: Optional[str]) -> int:
        """Validate, append a revision and publish it in one transaction."""

        issues = validate_rules(doc)
        if issues:
            raise RulesValidationError(issues)
        doc_json = json.dumps(doc, separators=(",", ":"), ensure_ascii=False)

        async def _do() -> int:
            async with aiosqlite.connect(self._path) as db:
                async with db.execute("SELECT COALESCE(MAX(revision), 0) + 1 FROM flagging_rules_revisions") as cur:
                    new_rev = int((await cur.fetchone())[0])
                await db.execute(
                    "INSERT INTO flagging_rules_revisions (revision, created_at_iso, created_by, doc_json) VALUES (?, ?, ?, ?)",
                    (new_rev, created_at_iso, created_by, doc_json),
                )
                await db.execute(
                    "INSERT INTO flagging_rules_state (id, published_revision) VALUES (1, ?) "
                    "ON CONFLICT(id) DO UPDATE SET published_revision = excluded.published_revision",
                    (new_rev,),
                )
                await db.commit()
                return new_rev

        return await self._write(_do, what="publish_new")

    async def rollback(self, target_revision: int) -> dict[str, Any]:
        """Republish an existing revision and return its document."""

        rev = await self.get(int(target_revision))
        if rev is None:
            raise NotFoundError(f"rules revision {target_revision}")

        async def _do() -> None:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    "UPDATE flagging_rules_state SET published_revision = ? WHERE id = 1",
                    (rev.revision,),
                )
                await db.commit()

        await self._write(_do, what="rollback")
        return rev.doc

    async def list_revisions(self, limit: int = 20) -> list[RulesRevision]:
        limit = max(1, min(200, int(limit)))
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT revision, created_at_iso, created_by, doc_json FROM flagging_rules_revisions ORDER BY revision DESC LIMIT ?",
                (limit,),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]
