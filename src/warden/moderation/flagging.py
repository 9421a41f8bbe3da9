from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Optional, Sequence, Union

from ..interfaces import ContentStore, ReputationProvider
from ..observability import ObservabilityManager
from ..services.audit_store import ModerationAuditStore
from ..services.flagging_stats_store import FlaggingStatsStore
from ..services.rules_config_store import RulesConfigStore
from ..utils import retry_async, to_iso, utcnow
from .catalog import REPORT_REASON_FLAGS, severity_of
from .classifier import classify
from .config_schema import FlaggingRulesConfiguration, default_rules
from .models import (
    AuthorContext,
    AutomaticAction,
    AutomaticActionKind,
    ContentProcessingResult,
    ContentSubmission,
    FlaggingStatistics,
    ModerationFlag,
    ModerationQueueItem,
    ModerationResult,
    ModerationStatus,
    ReportReason,
    Severity,
)
from .queue import ReviewQueue, new_queue_item

log = logging.getLogger("warden.flagging")

NEW_USER_REVIEW_CONFIDENCE = 0.6
LOW_REPUTATION_POINTS = 50
LOW_REPUTATION_CONFIDENCE = 0.5


def _categories(flags) -> str:
    return ", ".join(sorted(f.value for f in flags))


def decide(
    result: ModerationResult,
    rules: FlaggingRulesConfiguration,
    author: Optional[AuthorContext] = None,
) -> AutomaticAction:
    """Map a classification to an automatic action. First matching rule wins."""

    flags = result.flags
    if rules.pii_auto_reject and result.detected_pii:
        return AutomaticAction.reject("Personal information detected")
    if rules.harassment_auto_reject and ModerationFlag.HARASSMENT in flags:
        return AutomaticAction.reject("Harassment detected")
    if rules.hate_speech_auto_reject and ModerationFlag.HATE_SPEECH in flags:
        return AutomaticAction.reject("Hate speech detected")
    if result.confidence >= rules.auto_reject_threshold:
        return AutomaticAction.reject("Confidence exceeds threshold")

    if rules.spam_auto_flag and ModerationFlag.SPAM in flags:
        return AutomaticAction.flag(f"Potential spam detected; flagged categories: {_categories(flags)}")
    if result.confidence >= rules.auto_flag_threshold:
        return AutomaticAction.flag(f"Confidence exceeds review threshold; flagged categories: {_categories(flags)}")

    if author is not None and flags:
        if author.is_new_user and rules.new_user_stricter_rules and result.confidence >= NEW_USER_REVIEW_CONFIDENCE:
            return AutomaticAction.flag("New user content requires review")
        if (
            author.reputation is not None
            and author.reputation < LOW_REPUTATION_POINTS
            and result.confidence >= LOW_REPUTATION_CONFIDENCE
        ):
            return AutomaticAction.flag("Low reputation user content flagged")

    return AutomaticAction.approve()


@dataclass(frozen=True)
class _RulesSnapshot:
    revision: int
    rules: FlaggingRulesConfiguration


_OUTCOME_COUNTERS = {
    AutomaticActionKind.AUTO_APPROVE: "auto_approved",
    AutomaticActionKind.AUTO_FLAG: "auto_flagged",
    AutomaticActionKind.AUTO_REJECT: "auto_rejected",
}


class FlaggingEngine:
    """Classify submissions, apply the published rules and route the outcome.

    The rules are held as one immutable snapshot that updates replace
    wholesale, so a submission is always judged against a single
    consistent revision. Counters are owned by this instance and mirrored
    durably with single-statement increments.
    """

    def __init__(
        self,
        *,
        queue: ReviewQueue,
        audit: ModerationAuditStore,
        stats_store: FlaggingStatsStore,
        rules_store: RulesConfigStore,
        content_store: ContentStore,
        reputation: ReputationProvider,
        seed_rules: Optional[FlaggingRulesConfiguration] = None,
        audit_auto_rejections: bool = True,
        batch_concurrency: int = 5,
        visibility_attempts: int = 3,
        retry_base_delay: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
        observability: Optional[ObservabilityManager] = None,
    ) -> None:
        self._queue = queue
        self._audit = audit
        self._stats_store = stats_store
        self._rules_store = rules_store
        self._content_store = content_store
        self._reputation = reputation
        self._seed_rules = seed_rules or default_rules()
        self._audit_auto_rejections = audit_auto_rejections
        self._batch_concurrency = max(1, int(batch_concurrency))
        self._visibility_attempts = max(1, int(visibility_attempts))
        self._retry_base_delay = retry_base_delay
        self._clock = clock
        self._obs = observability

        self._snapshot = _RulesSnapshot(0, self._seed_rules)
        self._rules_lock = asyncio.Lock()
        self._stats = FlaggingStatistics()
        self._inflight: set[asyncio.Task] = set()

    async def load(self) -> None:
        await self._rules_store.ensure_initialized(self._seed_rules.to_doc(), created_at_iso=to_iso(self._clock()))
        await self.refresh_rules()
        self._stats = await self._stats_store.load()
        log.info("Flagging engine ready (rules revision %d, %d processed so far)", self._snapshot.revision, self._stats.total_processed)

    # Rules

    def get_flagging_rules(self) -> FlaggingRulesConfiguration:
        return self._snapshot.rules

    @property
    def rules_revision(self) -> int:
        return self._snapshot.revision

    async def refresh_rules(self) -> FlaggingRulesConfiguration:
        """Reload the published revision (e.g. after another process published one)."""

        revision, doc = await self._rules_store.get_published()
        self._snapshot = _RulesSnapshot(revision, FlaggingRulesConfiguration.from_doc(doc))
        return self._snapshot.rules

    async def update_flagging_rules(
        self,
        rules: Union[FlaggingRulesConfiguration, dict[str, Any]],
        *,
        updated_by: Optional[str] = None,
    ) -> int:
        """Validate, persist and publish new rules. Raises RulesValidationError when invalid."""

        if isinstance(rules, FlaggingRulesConfiguration):
            new_rules = rules
        else:
            new_rules = FlaggingRulesConfiguration.from_doc(rules)
        doc = new_rules.to_doc()

        async with self._rules_lock:
            previous = self._snapshot
            revision = await self._rules_store.publish_new(doc, created_at_iso=to_iso(self._clock()), created_by=updated_by)
            self._snapshot = _RulesSnapshot(revision, new_rules)

        log.info("Published flagging rules revision %d (previous %d) by %s", revision, previous.revision, updated_by or "system")
        if self._obs:
            self._obs.log_config_change(revision, updated_by, {"previous_revision": previous.revision, "rules": doc})
        return revision

    async def rollback_flagging_rules(self, revision: int, *, updated_by: Optional[str] = None) -> FlaggingRulesConfiguration:
        async with self._rules_lock:
            doc = await self._rules_store.rollback(revision)
            rules = FlaggingRulesConfiguration.from_doc(doc)
            self._snapshot = _RulesSnapshot(int(revision), rules)

        log.info("Rolled flagging rules back to revision %d", revision)
        if self._obs:
            self._obs.log_config_change(int(revision), updated_by, {"rollback": True})
        return rules

    # Statistics

    def get_statistics(self) -> FlaggingStatistics:
        return self._stats.snapshot()

    async def reset_statistics(self) -> None:
        await self._stats_store.reset()
        self._stats = FlaggingStatistics()
        log.info("Flagging statistics reset")

    async def _count(self, counters: dict[str, int]) -> None:
        await self._stats_store.increment(counters)
        # No await between here and the end, so concurrent callers never interleave.
        for name, n in counters.items():
            setattr(self._stats, name, getattr(self._stats, name) + n)

    # Processing

    async def _describe_author(self, author_id: str) -> Optional[AuthorContext]:
        try:
            return await self._reputation.describe_author(author_id)
        except Exception:
            log.exception("Could not describe author %s; applying default rules", author_id)
            return None

    async def process_and_flag(self, submission: ContentSubmission) -> ContentProcessingResult:
        snapshot = self._snapshot
        author = await self._describe_author(submission.author_id)
        result = classify(submission, now=self._clock())
        action = decide(result, snapshot.rules, author)

        # Once the commit starts it runs to completion even if the caller is cancelled.
        task = asyncio.ensure_future(self._commit(submission, result, action, snapshot))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    def _queue_status(self, result: ModerationResult, action: AutomaticAction) -> Optional[ModerationStatus]:
        if action.kind is AutomaticActionKind.AUTO_FLAG:
            return ModerationStatus.FLAGGED
        if action.kind is AutomaticActionKind.AUTO_REJECT:
            return ModerationStatus.PENDING if self._audit_auto_rejections else None
        if result.flags and result.requires_human_review:
            return ModerationStatus.PENDING
        return None

    async def _commit(
        self,
        submission: ContentSubmission,
        result: ModerationResult,
        action: AutomaticAction,
        snapshot: _RulesSnapshot,
    ) -> ContentProcessingResult:
        await self._audit.record_result(
            result,
            author_id=submission.author_id,
            automatic_action=action.kind,
            action_reason=action.reason,
        )

        queued: Optional[ModerationQueueItem] = None
        newly_queued = False
        status = self._queue_status(result, action)
        if status is not None:
            item = new_queue_item(
                submission,
                result,
                status=status,
                reports_threshold=snapshot.rules.multiple_reports_threshold,
                now=self._clock(),
            )
            queued = await self._queue.enqueue(item)
            newly_queued = queued.id == item.id

        counters = {"total_processed": 1, _OUTCOME_COUNTERS[action.kind]: 1}
        if newly_queued:
            counters["sent_to_human_review"] = 1
        if result.detected_pii:
            counters["pii_detected"] = 1
        await self._count(counters)

        await self._apply_visibility(submission, action.kind is AutomaticActionKind.AUTO_APPROVE)

        log.info(
            "Content %s: %s (%s) confidence=%.2f severity=%s rules_rev=%d",
            submission.content_id,
            action.kind.value,
            action.reason or "no issues",
            result.confidence,
            result.severity.value,
            snapshot.revision,
        )
        if self._obs:
            self._obs.log_auto_action(
                submission.content_id,
                submission.author_id,
                action.kind.value,
                action.reason,
                {
                    "flags": sorted(f.value for f in result.flags),
                    "confidence": result.confidence,
                    "severity": result.severity.value,
                    "queue_item_id": queued.id if queued else None,
                    "rules_revision": snapshot.revision,
                },
            )

        return ContentProcessingResult(
            content_id=submission.content_id,
            moderation_result=result,
            automatic_action=action,
            requires_human_review=queued is not None,
            queue_item_id=queued.id if queued else None,
        )

    async def _apply_visibility(self, submission: ContentSubmission, visible: bool) -> None:
        try:
            await retry_async(
                lambda: self._content_store.set_visibility(submission.content_id, visible),
                tries=self._visibility_attempts,
                base_delay=self._retry_base_delay,
            )
        except Exception as e:
            # The decision is recorded; the content store can be reconciled from the audit trail.
            log.exception("Failed to set visibility=%s for %s", visible, submission.content_id)
            await self._audit.add_event(
                event_type="visibility",
                status="failed",
                created_at_iso=to_iso(self._clock()),
                details={"visible": visible, "error": repr(e)},
                content_id=submission.content_id,
                user_id=submission.author_id,
            )
            if self._obs:
                self._obs.log_error_with_context(e, {"content_id": submission.content_id, "operation": "set_visibility"})

    async def process_batch(
        self,
        items: Sequence[ContentSubmission],
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> list[Optional[ContentProcessingResult]]:
        """Process many submissions concurrently.

        Results come back in input order. A failed item leaves None in its
        slot. Setting `cancel` stops the batch: finished items keep their
        results, items not yet committed are dropped.
        """

        results: list[Optional[ContentProcessingResult]] = [None] * len(items)
        if not items:
            return results
        sem = asyncio.Semaphore(self._batch_concurrency)

        async def _one(idx: int, submission: ContentSubmission) -> None:
            async with sem:
                if cancel is not None and cancel.is_set():
                    return
                try:
                    results[idx] = await self.process_and_flag(submission)
                except Exception:
                    log.exception("Batch item %d (%s) failed", idx, submission.content_id)

        tasks = [asyncio.ensure_future(_one(i, s)) for i, s in enumerate(items)]
        try:
            if cancel is None:
                await asyncio.gather(*tasks)
            else:
                await self._wait_or_cancel(tasks, cancel)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            # Commits already underway finish before the batch returns.
            if self._inflight:
                await asyncio.gather(*list(self._inflight), return_exceptions=True)

        done = sum(1 for r in results if r is not None)
        log.info("Batch finished: %d/%d items processed", done, len(items))
        return results

    async def _wait_or_cancel(self, tasks: list[asyncio.Future], cancel: asyncio.Event) -> None:
        pending = set(tasks)
        cancel_wait = asyncio.ensure_future(cancel.wait())
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                if cancel_wait in done:
                    log.info("Batch cancelled with %d items outstanding", len(pending))
                    for t in pending:
                        t.cancel()
                    return
        finally:
            cancel_wait.cancel()

    # User reports

    async def report_content(
        self,
        content_id: str,
        reason: Union[ReportReason, str],
        *,
        reporter_id: Optional[str] = None,
    ) -> Optional[ModerationQueueItem]:
        """Record a user report.

        Queued content has its report count bumped (which may escalate it).
        Otherwise the content is classified, tagged with the reported flag and
        queued for review. Returns None when the content does not exist.
        """

        reason = ReportReason(reason)
        if self._queue.get_open_item(content_id) is not None:
            item = await self._queue.update_report_count(content_id, 1)
            if item is not None:
                log.info("Report (%s) by %s on queued content %s; %d reports", reason.value, reporter_id, content_id, item.report_count)
                return item

        record = await self._content_store.get_content(content_id)
        if record is None:
            log.info("Report on unknown content %s ignored", content_id)
            return None

        submission = ContentSubmission(
            content_id=record.content_id,
            content_type=record.content_type,
            author_id=record.author_id,
            text=record.text,
            images=tuple(record.images),
        )
        classified = classify(submission, now=self._clock())
        flag = REPORT_REASON_FLAGS[reason]
        flags = classified.flags | {flag}
        severity = Severity.highest([classified.severity, severity_of(flags)])
        note = f"user report: {reason.value}"
        if classified.flags:
            text = f"{classified.reason}; {note}"
        else:
            text = note[0].upper() + note[1:]
        result = replace(classified, flags=flags, severity=severity, reason=text, status=ModerationStatus.PENDING)

        await self._audit.record_result(result, author_id=record.author_id, automatic_action=None, action_reason=None, source="report")
        item = new_queue_item(
            submission,
            result,
            status=ModerationStatus.PENDING,
            reports_threshold=self._snapshot.rules.multiple_reports_threshold,
            now=self._clock(),
            report_count=1,
        )
        stored = await self._queue.enqueue(item)
        if stored.id != item.id:
            # Someone queued it between the check and now.
            updated = await self._queue.update_report_count(content_id, 1)
            stored = updated or stored

        log.info("Report (%s) by %s queued content %s at %s priority", reason.value, reporter_id, content_id, stored.priority.value)
        return stored
