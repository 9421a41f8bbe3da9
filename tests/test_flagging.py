"""
Tests for the automatic decision step and the flagging engine.

Tests cover:
- Decision order and the author-aware stricter rules
- Routing of outcomes into the review queue
- Statistics invariants under concurrency and across restarts
- Batch ordering and cancellation
- Rules publication, validation and rollback
- User reports
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from warden.errors import RulesValidationError
from warden.moderation.config_schema import FlaggingRulesConfiguration
from warden.moderation.flagging import decide
from warden.moderation.models import (
    AuthorContext,
    AutomaticActionKind,
    ContentSubmission,
    ContentType,
    FlaggingStatistics,
    ModerationFlag,
    ModerationResult,
    ModerationStatus,
    PIIDetection,
    PIIType,
    Priority,
    Severity,
)
from warden.service import create_service
from warden.services.flagging_stats_store import FlaggingStatsStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _result(flags=(), confidence=0.0, severity=Severity.LOW, pii=()):
    return ModerationResult(
        content_id="c-1",
        content_type=ContentType.POST,
        status=ModerationStatus.PENDING,
        flags=frozenset(flags),
        confidence=confidence,
        severity=severity,
        reason="test",
        detected_pii=tuple(pii),
        created_at=NOW,
    )


_PHONE = PIIDetection(type=PIIType.PHONE_NUMBER, location=(0, 12), confidence=0.9, text="555-123-4567")


class TestDecide:
    def test_pii_rejects_first(self):
        result = _result({ModerationFlag.PERSONAL_INFORMATION, ModerationFlag.HARASSMENT}, 0.95, Severity.HIGH, [_PHONE])

        action = decide(result, FlaggingRulesConfiguration())

        assert action.kind is AutomaticActionKind.AUTO_REJECT
        assert action.reason == "Personal information detected"

    def test_harassment_before_hate_speech(self):
        result = _result({ModerationFlag.HARASSMENT, ModerationFlag.HATE_SPEECH}, 0.95, Severity.HIGH)

        action = decide(result, FlaggingRulesConfiguration())

        assert action.reason == "Harassment detected"

    def test_hate_speech_gate(self):
        result = _result({ModerationFlag.HATE_SPEECH}, 0.5, Severity.HIGH)

        assert decide(result, FlaggingRulesConfiguration()).reason == "Hate speech detected"

    def test_disabled_gates_fall_through_to_thresholds(self):
        rules = FlaggingRulesConfiguration(pii_auto_reject=False, harassment_auto_reject=False)
        result = _result({ModerationFlag.PERSONAL_INFORMATION}, 0.95, Severity.HIGH, [_PHONE])

        action = decide(result, rules)

        assert action.kind is AutomaticActionKind.AUTO_REJECT
        assert action.reason == "Confidence exceeds threshold"

    def test_review_threshold_lists_categories(self):
        result = _result({ModerationFlag.MISINFORMATION, ModerationFlag.SEXUAL_CONTENT}, 0.75, Severity.MEDIUM)

        action = decide(result, FlaggingRulesConfiguration())

        assert action.kind is AutomaticActionKind.AUTO_FLAG
        assert "misinformation, sexual_content" in action.reason

    def test_spam_flag_gate_ignores_confidence(self):
        result = _result({ModerationFlag.SPAM}, 0.3)

        action = decide(result, FlaggingRulesConfiguration())

        assert action.kind is AutomaticActionKind.AUTO_FLAG
        assert "spam" in action.reason

    def test_low_confidence_is_approved(self):
        result = _result({ModerationFlag.MISINFORMATION}, 0.6, Severity.MEDIUM)

        assert decide(result, FlaggingRulesConfiguration()).kind is AutomaticActionKind.AUTO_APPROVE

    def test_new_user_stricter_rules(self):
        result = _result({ModerationFlag.MISINFORMATION}, 0.65, Severity.MEDIUM)
        author = AuthorContext(user_id="u", is_new_user=True)

        assert decide(result, FlaggingRulesConfiguration()).kind is AutomaticActionKind.AUTO_APPROVE
        action = decide(result, FlaggingRulesConfiguration(), author)
        assert action.reason == "New user content requires review"

        relaxed = FlaggingRulesConfiguration(new_user_stricter_rules=False)
        assert decide(result, relaxed, author).kind is AutomaticActionKind.AUTO_APPROVE

    def test_low_reputation_rule(self):
        result = _result({ModerationFlag.COPYRIGHT_VIOLATION}, 0.55)

        action = decide(result, FlaggingRulesConfiguration(), AuthorContext(user_id="u", reputation=20))

        assert action.reason == "Low reputation user content flagged"

    def test_author_rules_need_a_flag(self):
        author = AuthorContext(user_id="u", is_new_user=True, reputation=0)

        assert decide(_result(), FlaggingRulesConfiguration(), author).kind is AutomaticActionKind.AUTO_APPROVE

    def test_rules_invariant_enforced_at_construction(self):
        with pytest.raises(ValueError):
            FlaggingRulesConfiguration(auto_reject_threshold=0.7, auto_flag_threshold=0.7)
        with pytest.raises(ValueError):
            FlaggingRulesConfiguration(auto_reject_threshold=1.5)


class TestProcessAndFlag:
    @pytest.mark.asyncio
    async def test_pii_is_rejected_and_queued_for_audit(self, service, submit, content_store):
        outcome = await submit("c-pii", "Contact me at 555-123-4567")

        assert outcome.automatic_action.kind is AutomaticActionKind.AUTO_REJECT
        assert outcome.requires_human_review is True
        item = service.queue.get_open_item("c-pii")
        assert item is not None
        assert item.status is ModerationStatus.PENDING
        assert item.id == outcome.queue_item_id
        assert content_store.visibility["c-pii"] is False

        stats = service.get_statistics()
        assert stats.total_processed == 1
        assert stats.auto_rejected == 1
        assert stats.pii_detected == 1
        assert stats.sent_to_human_review == 1

    @pytest.mark.asyncio
    async def test_spam_is_flagged_into_queue(self, service, submit):
        outcome = await submit("c-spam", "CLICK HERE NOW!!! BUY NOW LIMITED TIME OFFER!!!")

        assert outcome.automatic_action.kind is AutomaticActionKind.AUTO_FLAG
        assert service.queue.get_open_item("c-spam").status is ModerationStatus.FLAGGED

    @pytest.mark.asyncio
    async def test_clean_content_is_published(self, service, submit, content_store):
        outcome = await submit("c-ok", "Great recipe, thanks for sharing")

        assert outcome.automatic_action.kind is AutomaticActionKind.AUTO_APPROVE
        assert outcome.queue_item_id is None
        assert content_store.visibility["c-ok"] is True
        assert len(service.queue) == 0

    @pytest.mark.asyncio
    async def test_resubmission_keeps_existing_queue_item(self, service, submit):
        first = await submit("c-dup", "CLICK HERE NOW!!! BUY NOW LIMITED TIME OFFER!!!")
        second = await submit("c-dup", "CLICK HERE NOW!!! BUY NOW LIMITED TIME OFFER!!!")

        assert second.queue_item_id == first.queue_item_id
        assert len(service.queue) == 1
        assert service.get_statistics().sent_to_human_review == 1

    @pytest.mark.asyncio
    async def test_auto_rejections_can_skip_the_queue(self, settings, content_store, reputation, clock):
        svc = await create_service(
            replace(settings, audit_auto_rejections=False),
            content_store=content_store,
            reputation=reputation,
            clock=clock,
            retry_base_delay=0,
        )
        content_store.add("c-pii", "author-1", "mail me: someone@example.com")

        outcome = await svc.classify_and_flag(
            ContentSubmission("c-pii", ContentType.POST, "author-1", "mail me: someone@example.com")
        )

        assert outcome.automatic_action.kind is AutomaticActionKind.AUTO_REJECT
        assert outcome.queue_item_id is None
        assert len(svc.queue) == 0

    @pytest.mark.asyncio
    async def test_new_author_context_is_used(self, service, submit, reputation):
        reputation.set_author("newbie", is_new_user=True)

        outcome = await submit("c-new", "miracle cure for everything", author_id="newbie")

        assert outcome.automatic_action.reason == "New user content requires review"

    @pytest.mark.asyncio
    async def test_visibility_failure_does_not_fail_processing(self, service, submit, content_store):
        content_store.fail_times = 10

        outcome = await submit("c-vis", "Contact me at 555-123-4567")

        assert outcome.automatic_action.kind is AutomaticActionKind.AUTO_REJECT
        events = await service.stores.audit.events_for_content("c-vis")
        assert [e["event_type"] for e in events] == ["visibility"]
        assert events[0]["status"] == "failed"


class TestStatistics:
    def test_rates_are_zero_without_traffic(self):
        stats = FlaggingStatistics()

        assert stats.auto_approval_rate == 0.0
        assert stats.human_review_rate == 0.0

    @pytest.mark.asyncio
    async def test_concurrent_processing_loses_no_updates(self, service, content_store, sqlite_path):
        texts = [
            "Great recipe, thanks",
            "Contact me at 555-123-4567",
            "CLICK HERE NOW!!! BUY NOW LIMITED TIME OFFER!!!",
            "I hate you, you worthless nazi",
        ]
        submissions = []
        for i in range(20):
            cid = f"c-{i}"
            content_store.add(cid, f"author-{i}", texts[i % len(texts)])
            submissions.append(ContentSubmission(cid, ContentType.POST, f"author-{i}", texts[i % len(texts)]))

        await asyncio.gather(*(service.classify_and_flag(s) for s in submissions))

        stats = service.get_statistics()
        assert stats.total_processed == 20
        assert stats.auto_approved + stats.auto_flagged + stats.auto_rejected <= stats.total_processed
        assert stats.auto_approved == 5
        assert stats.auto_flagged == 5
        assert stats.auto_rejected == 10

        stored = await FlaggingStatsStore(sqlite_path).load()
        assert stored.to_dict() == stats.to_dict()

    @pytest.mark.asyncio
    async def test_reset(self, service, submit):
        await submit("c-1", "Great recipe, thanks")

        await service.engine.reset_statistics()

        assert service.get_statistics().total_processed == 0


class TestBatch:
    @pytest.mark.asyncio
    async def test_results_keep_input_order(self, service, content_store):
        texts = ["hello there", "Contact me at 555-123-4567", "nice", "you are worthless", "ok", "CLICK HERE NOW!!! BUY NOW!!!"]
        items = []
        for i, text in enumerate(texts):
            content_store.add(f"b-{i}", "author-1", text)
            items.append(ContentSubmission(f"b-{i}", ContentType.COMMENT, "author-1", text))

        results = await service.process_batch(items)

        assert [r.content_id for r in results] == [i.content_id for i in items]
        assert service.get_statistics().total_processed == len(items)

    @pytest.mark.asyncio
    async def test_empty_batch(self, service):
        assert await service.process_batch([]) == []

    @pytest.mark.asyncio
    async def test_cancelled_before_start_processes_nothing(self, service, content_store):
        items = [ContentSubmission(f"b-{i}", ContentType.POST, "author-1", "hello") for i in range(5)]
        cancel = asyncio.Event()
        cancel.set()

        results = await service.process_batch(items, cancel=cancel)

        assert results == [None] * 5
        assert service.get_statistics().total_processed == 0

    @pytest.mark.asyncio
    async def test_cancel_midway_keeps_committed_items(self, settings, reputation, clock, content_store):
        cancel = asyncio.Event()

        class CancellingStore(type(content_store)):
            async def set_visibility(self, content_id, visible):
                await super().set_visibility(content_id, visible)
                cancel.set()

        store = CancellingStore()
        svc = await create_service(
            replace(settings, batch_concurrency=1),
            content_store=store,
            reputation=reputation,
            clock=clock,
            retry_base_delay=0,
        )
        items = [ContentSubmission(f"b-{i}", ContentType.POST, "author-1", "hello") for i in range(5)]

        results = await svc.process_batch(items, cancel=cancel)

        processed = svc.get_statistics().total_processed
        assert 1 <= processed < len(items)
        assert sum(r is not None for r in results) <= processed
        for r, item in zip(results, items):
            if r is not None:
                assert r.content_id == item.content_id


class TestRules:
    @pytest.mark.asyncio
    async def test_update_applies_to_later_content_only(self, service, submit):
        before = await submit("c-1", "miracle cure for everything")
        assert before.automatic_action.kind is AutomaticActionKind.AUTO_APPROVE

        rules = replace(service.get_flagging_rules(), auto_flag_threshold=0.5)
        revision = await service.update_flagging_rules(rules, updated_by="admin")

        assert revision == 2
        assert service.get_flagging_rules().auto_flag_threshold == 0.5
        after = await submit("c-2", "miracle cure for everything")
        assert after.automatic_action.kind is AutomaticActionKind.AUTO_FLAG
        # The earlier decision is not revisited.
        assert before.automatic_action.kind is AutomaticActionKind.AUTO_APPROVE

    @pytest.mark.asyncio
    async def test_invalid_document_is_refused(self, service):
        doc = service.get_flagging_rules().to_doc()
        doc["auto_flag_threshold"] = 0.95

        with pytest.raises(RulesValidationError) as excinfo:
            await service.update_flagging_rules(doc)

        assert any(i.path == "$.auto_flag_threshold" for i in excinfo.value.issues)
        assert service.engine.rules_revision == 1
        assert service.get_flagging_rules().auto_flag_threshold == 0.7

    @pytest.mark.asyncio
    async def test_rollback(self, service):
        await service.update_flagging_rules(replace(service.get_flagging_rules(), multiple_reports_threshold=5))

        restored = await service.rollback_flagging_rules(1)

        assert restored.multiple_reports_threshold == 3
        assert service.get_flagging_rules().multiple_reports_threshold == 3
        assert service.engine.rules_revision == 1

    @pytest.mark.asyncio
    async def test_published_rules_survive_restart(self, service, settings, content_store, reputation, clock):
        await service.update_flagging_rules(replace(service.get_flagging_rules(), auto_reject_threshold=0.95))

        restarted = await create_service(settings, content_store=content_store, reputation=reputation, clock=clock)

        assert restarted.get_flagging_rules().auto_reject_threshold == 0.95
        assert restarted.engine.rules_revision == 2


class TestReports:
    @pytest.mark.asyncio
    async def test_report_on_unknown_content(self, service):
        assert await service.report_content("missing", "spam") is None

    @pytest.mark.asyncio
    async def test_report_queues_unflagged_content(self, service, content_store):
        content_store.add("c-r", "author-1", "Nice sunny day at the beach")

        item = await service.report_content("c-r", "harassment", reporter_id="u-9")

        assert item.report_count == 1
        assert ModerationFlag.HARASSMENT in item.moderation_result.flags
        assert item.moderation_result.reason == "User report: harassment"
        assert item.priority is Priority.HIGH
        assert service.get_statistics().total_processed == 0

    @pytest.mark.asyncio
    async def test_repeated_reports_escalate_once(self, service, content_store):
        content_store.add("c-r", "author-1", "Nice sunny day at the beach")

        await service.report_content("c-r", "spam")
        await service.report_content("c-r", "spam")
        item = await service.report_content("c-r", "spam")

        assert item.report_count == 3
        assert item.escalated is True
        assert item.priority is Priority.HIGH

        item = await service.report_content("c-r", "spam")
        assert item.report_count == 4
        assert item.priority is Priority.HIGH
