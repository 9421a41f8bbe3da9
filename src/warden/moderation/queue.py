from __future__ import annotations

import heapq
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

import aiosqlite

from ..observability import ObservabilityManager
from ..services.queue_store import QueueStore
from ..utils import KeyedLocks, new_id, utcnow
from .models import (
    ContentSubmission,
    ModerationQueueItem,
    ModerationResult,
    ModerationStatus,
    Priority,
    QueueFilter,
    QueueStatistics,
    Severity,
)

log = logging.getLogger("warden.queue")

_READY = (ModerationStatus.PENDING, ModerationStatus.FLAGGED)
_COMPACT_MIN_STALE = 64


def initial_priority(result: ModerationResult, report_count: int, reports_threshold: int) -> tuple[Priority, bool]:
    """Priority for a new queue item and whether report escalation was applied."""

    if result.severity is Severity.CRITICAL:
        priority = Priority.CRITICAL
    elif result.severity is Severity.HIGH:
        priority = Priority.HIGH
    elif result.severity is Severity.MEDIUM or report_count > 0:
        priority = Priority.MEDIUM
    else:
        priority = Priority.LOW

    escalated = report_count >= reports_threshold
    if escalated:
        priority = priority.escalated()
    return priority, escalated


def new_queue_item(
    submission: ContentSubmission,
    result: ModerationResult,
    *,
    status: ModerationStatus,
    reports_threshold: int,
    now: datetime,
    report_count: int = 0,
) -> ModerationQueueItem:
    priority, escalated = initial_priority(result, report_count, reports_threshold)
    return ModerationQueueItem(
        id=new_id(),
        content_id=submission.content_id,
        content_type=submission.content_type,
        author_id=submission.author_id,
        content=submission.text,
        image_urls=tuple(img.url for img in submission.images),
        moderation_result=result,
        report_count=report_count,
        priority=priority,
        status=status,
        created_at=now,
        updated_at=now,
        escalated=escalated,
    )


class ReviewQueue:
    """Priority-ordered review queue backed by `QueueStore`.

    Ready items (pending or flagged) are kept in a heap keyed by
    (priority desc, created_at asc, id). Removal is lazy: every item carries a
    version, and heap entries whose version no longer matches are skipped.
    Mutations are serialized per content id, never across the whole queue.
    """

    def __init__(
        self,
        store: QueueStore,
        *,
        reports_threshold: Callable[[], int],
        clock: Callable[[], datetime] = utcnow,
        observability: Optional[ObservabilityManager] = None,
    ) -> None:
        self._store = store
        self._reports_threshold = reports_threshold
        self._clock = clock
        self._obs = observability
        self._items: dict[str, ModerationQueueItem] = {}
        self._by_content: dict[str, str] = {}
        self._versions: dict[str, int] = {}
        self._heap: list[tuple[int, datetime, str, int]] = []
        self._stale = 0
        self._locks = KeyedLocks()

    async def load(self) -> int:
        """Rebuild in-memory state from the store. Returns the number of open items."""

        items = await self._store.list_open()
        self._items.clear()
        self._by_content.clear()
        self._versions.clear()
        self._heap.clear()
        self._stale = 0
        for item in items:
            self._index(item)
        log.info("Loaded %d open queue items", len(items))
        return len(items)

    def __len__(self) -> int:
        return len(self._items)

    # Index maintenance (synchronous, so never interleaved with other coroutines)

    def _push(self, item: ModerationQueueItem) -> None:
        version = self._versions.get(item.id, 0) + 1
        if item.id in self._versions:
            self._stale += 1
        self._versions[item.id] = version
        if item.status in _READY:
            neg_rank, created_at, item_id = item.sort_key
            heapq.heappush(self._heap, (neg_rank, created_at, item_id, version))
        self._maybe_compact()

    def _index(self, item: ModerationQueueItem) -> None:
        self._items[item.id] = item
        self._by_content[item.content_id] = item.id
        self._push(item)

    def _drop(self, item_id: str) -> Optional[ModerationQueueItem]:
        item = self._items.pop(item_id, None)
        if item is None:
            return None
        if self._by_content.get(item.content_id) == item_id:
            self._by_content.pop(item.content_id, None)
        self._versions.pop(item_id, None)
        self._stale += 1
        self._maybe_compact()
        return item

    def _is_live(self, entry: tuple[int, datetime, str, int]) -> bool:
        item_id, version = entry[2], entry[3]
        item = self._items.get(item_id)
        return item is not None and self._versions.get(item_id) == version and item.status in _READY

    def _maybe_compact(self) -> None:
        if self._stale < _COMPACT_MIN_STALE or self._stale * 2 < len(self._heap):
            return
        self._heap = [e for e in self._heap if self._is_live(e)]
        heapq.heapify(self._heap)
        self._stale = 0

    def _take_ready(self, flt: Optional[QueueFilter]) -> Optional[ModerationQueueItem]:
        if flt is None or not (flt.status or flt.content_type or flt.priority or flt.search):
            while self._heap:
                entry = heapq.heappop(self._heap)
                if self._is_live(entry):
                    return self._items[entry[2]]
            return None

        candidates = [i for i in self._items.values() if i.status in _READY and flt.matches(i)]
        if not candidates:
            return None
        return min(candidates, key=lambda i: i.sort_key)

    # Public API

    async def enqueue(self, item: ModerationQueueItem) -> ModerationQueueItem:
        """Add an item. If the content is already queued, the existing item is returned unchanged."""

        async with self._locks.get(item.content_id):
            existing_id = self._by_content.get(item.content_id)
            if existing_id is not None:
                return replace(self._items[existing_id])
            try:
                await self._store.insert(item)
            except aiosqlite.IntegrityError:
                existing = await self._store.get_open_for_content(item.content_id)
                if existing is None:
                    raise
                self._index(existing)
                return replace(existing)

            self._index(replace(item))

        if self._obs:
            self._obs.log_queue_event(
                "enqueue",
                item.content_id,
                {"item_id": item.id, "priority": item.priority.value, "status": item.status.value},
            )
        return replace(item)

    async def dequeue_next(
        self,
        flt: Optional[QueueFilter] = None,
        *,
        moderator_id: Optional[str] = None,
    ) -> Optional[ModerationQueueItem]:
        """Claim the next ready item for review.

        The claimed item moves to `under_review`; it stays listed and counted
        but is out of the ready order until released or resolved.
        """

        while True:
            item = self._take_ready(flt)
            if item is None:
                return None

            prior_status, prior_assignee = item.status, item.assigned_to
            item.status = ModerationStatus.UNDER_REVIEW
            if moderator_id is not None:
                item.assigned_to = moderator_id
            item.updated_at = self._clock()
            self._push(item)

            async with self._locks.get(item.content_id):
                try:
                    ok = await self._store.update_state(
                        item.id,
                        status=item.status,
                        assigned_to=item.assigned_to,
                        updated_at=item.updated_at,
                    )
                except Exception:
                    item.status, item.assigned_to = prior_status, prior_assignee
                    if item.id in self._items:
                        self._push(item)
                    raise
            if ok:
                return replace(item)
            # Resolved elsewhere while we were claiming it.
            self._drop(item.id)

    async def release(self, item_id: str, *, status: ModerationStatus = ModerationStatus.PENDING) -> bool:
        """Return an item to the ready order with `status` (pending or flagged)."""

        if status not in _READY:
            raise ValueError(f"Cannot release into status {status.value}")
        return await self._update_state(item_id, status=status)

    async def assign(self, item_id: str, moderator_id: str) -> bool:
        return await self._update_state(item_id, assigned_to=moderator_id)

    async def _update_state(
        self,
        item_id: str,
        *,
        status: Optional[ModerationStatus] = None,
        assigned_to: Optional[str] = None,
    ) -> bool:
        item = self._items.get(item_id)
        if item is None:
            return False
        async with self._locks.get(item.content_id):
            if item_id not in self._items:
                return False
            new_status = status or item.status
            new_assignee = assigned_to if assigned_to is not None else item.assigned_to
            now = self._clock()
            ok = await self._store.update_state(item_id, status=new_status, assigned_to=new_assignee, updated_at=now)
            if not ok:
                self._drop(item_id)
                return False
            status_changed = new_status != item.status
            item.status, item.assigned_to, item.updated_at = new_status, new_assignee, now
            if status_changed:
                self._push(item)
        return True

    async def resolve(
        self,
        item_id: str,
        *,
        status: ModerationStatus,
        resolution: str,
        resolved_by: Optional[str] = None,
    ) -> bool:
        """Remove an item from the queue. Resolving an already-resolved item is a no-op returning False."""

        item = self._items.get(item_id)
        key = item.content_id if item is not None else item_id
        async with self._locks.get(key):
            changed = await self._store.resolve(
                item_id,
                status=status,
                resolution=resolution,
                resolved_by=resolved_by,
                resolved_at=self._clock(),
            )
            dropped = self._drop(item_id)
        self._locks.discard(key)

        if changed and self._obs:
            self._obs.log_queue_event(
                "resolve",
                dropped.content_id if dropped else item_id,
                {"item_id": item_id, "resolution": resolution, "resolved_by": resolved_by},
            )
        return changed

    async def update_report_count(self, content_id: str, delta: int) -> Optional[ModerationQueueItem]:
        """Adjust the report count of the queued item for `content_id`.

        Crossing the multiple-reports threshold escalates priority one level,
        once; priority is never lowered automatically.
        """

        item_id = self._by_content.get(content_id)
        if item_id is None:
            return None
        async with self._locks.get(content_id):
            item = self._items.get(item_id)
            if item is None:
                return None
            threshold = self._reports_threshold()
            new_count = max(0, item.report_count + int(delta))
            escalate = not item.escalated and item.report_count < threshold <= new_count
            new_priority = item.priority.escalated() if escalate else item.priority
            now = self._clock()
            ok = await self._store.update_reports(
                item_id,
                report_count=new_count,
                priority=new_priority,
                escalated=item.escalated or escalate,
                updated_at=now,
            )
            if not ok:
                self._drop(item_id)
                return None
            priority_changed = new_priority != item.priority
            item.report_count, item.priority, item.updated_at = new_count, new_priority, now
            item.escalated = item.escalated or escalate
            if priority_changed:
                self._push(item)

        if escalate:
            log.info("Escalated %s to %s after %d reports", content_id, new_priority.value, new_count)
            if self._obs:
                self._obs.log_queue_event("escalate", content_id, {"priority": new_priority.value, "reports": new_count})
        return replace(item)

    def get_item(self, item_id: str) -> Optional[ModerationQueueItem]:
        item = self._items.get(item_id)
        return replace(item) if item else None

    def get_open_item(self, content_id: str) -> Optional[ModerationQueueItem]:
        item_id = self._by_content.get(content_id)
        return self.get_item(item_id) if item_id else None

    async def was_resolved(self, content_id: str) -> bool:
        return await self._store.has_resolved(content_id)

    async def resolved_wait_times(self, since: Optional[datetime]) -> list[float]:
        return await self._store.queue_times_since(since)

    def list_items(self, flt: Optional[QueueFilter] = None) -> list[ModerationQueueItem]:
        flt = flt or QueueFilter()
        matches = [i for i in self._items.values() if flt.matches(i)]
        matches.sort(key=lambda i: i.sort_key)
        return [replace(i) for i in matches[: max(0, flt.limit)]]

    def statistics(self) -> QueueStatistics:
        now = self._clock()
        items = list(self._items.values())
        if items:
            waits = [max(0.0, (now - i.created_at).total_seconds()) for i in items]
            avg_minutes = int(sum(waits) / len(waits) / 60)
        else:
            avg_minutes = 0
        return QueueStatistics(
            total_items=len(items),
            high_priority_items=sum(1 for i in items if i.is_high_priority),
            pending_items=sum(1 for i in items if i.status is ModerationStatus.PENDING),
            flagged_items=sum(1 for i in items if i.status is ModerationStatus.FLAGGED),
            under_review_items=sum(1 for i in items if i.status is ModerationStatus.UNDER_REVIEW),
            average_wait_time_minutes=avg_minutes,
        )
