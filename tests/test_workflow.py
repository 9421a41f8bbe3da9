"""
Tests for the moderator workflow.

Tests cover:
- Permission checks (roster, role, privileged actions)
- Decisions and their effects on visibility, queue and penalties
- Idempotent re-decisions
- Assignment, claiming and workload
- Moderator and system metrics
"""

import uuid

import pytest

from warden.moderation.models import (
    ModerationActionType,
    ModerationStatus,
    PenaltyKind,
    PenaltyType,
    ReportReason,
    TimeRange,
)

HARASSMENT_TEXT = "I hate you, you worthless nazi"
SPAM_TEXT = "buy now, limited time offer on designer watches"


class TestPermissions:
    @pytest.mark.asyncio
    async def test_unregistered_moderator_is_denied(self, service, submit):
        await submit("c-1", HARASSMENT_TEXT)

        outcome = await service.decide("c-1", "stranger", ModerationActionType.REJECT, "abuse")

        assert outcome.success is False
        assert "permission" in outcome.error
        assert service.queue.get_open_item("c-1") is not None

    @pytest.mark.asyncio
    async def test_moderator_without_role_is_denied(self, service, submit):
        await service.workflow.register_moderator("mod-x", "carol")
        await submit("c-1", HARASSMENT_TEXT)

        outcome = await service.decide("c-1", "mod-x", "reject", "abuse")

        assert outcome.success is False
        assert outcome.error.startswith("Permission denied")

    @pytest.mark.asyncio
    async def test_inactive_moderator_is_denied(self, service, submit, moderator):
        await submit("c-1", HARASSMENT_TEXT)
        assert await service.workflow.set_moderator_active(moderator, False) is True

        outcome = await service.decide("c-1", moderator, "reject", "abuse")

        assert outcome.success is False
        assert "permission" in outcome.error

    @pytest.mark.asyncio
    async def test_role_check_failure_is_a_denial(self, service, submit, moderator, reputation):
        await submit("c-1", HARASSMENT_TEXT)
        reputation.fail_role_checks = True

        outcome = await service.decide("c-1", moderator, "reject", "abuse")

        assert outcome.success is False
        assert "permission" in outcome.error
        assert service.queue.get_open_item("c-1") is not None

    @pytest.mark.asyncio
    async def test_ban_requires_senior_moderator(self, service, submit, moderator):
        await submit("c-1", HARASSMENT_TEXT)

        outcome = await service.decide("c-1", moderator, ModerationActionType.BAN, "repeat abuse")

        assert outcome.success is False
        assert "senior" in outcome.error
        assert await service.get_active_penalties("author-1") == []

    @pytest.mark.asyncio
    async def test_senior_ban_is_permanent_by_default(self, service, submit, senior_moderator):
        await submit("c-1", HARASSMENT_TEXT)

        outcome = await service.decide("c-1", senior_moderator, ModerationActionType.BAN, "repeat abuse")

        assert outcome.success is True
        assert outcome.penalty.penalty_type == PenaltyType.permanent_ban()
        assert outcome.penalty.user_id == "author-1"
        assert service.queue.get_open_item("c-1") is None

    @pytest.mark.asyncio
    async def test_denial_message_names_the_missing_permission(self, service, submit, moderator):
        await submit("c-1", HARASSMENT_TEXT)

        outcome = await service.decide("c-1", moderator, "delete", "abuse")

        assert outcome.error == "Permission denied: mod-1 does not have permission to delete; a senior moderator is required"


class TestDecisions:
    @pytest.mark.asyncio
    async def test_rejecting_harassment_bans_author_for_a_week(self, service, submit, moderator, content_store):
        await submit("c-1", HARASSMENT_TEXT)

        outcome = await service.decide("c-1", moderator, ModerationActionType.REJECT, "Harassment")

        assert outcome.success is True
        assert outcome.action_id is not None
        (penalty,) = await service.get_active_penalties("author-1")
        assert penalty.penalty_type == PenaltyType.temporary_ban(7)
        assert penalty.moderation_action_id == outcome.action_id
        assert content_store.visibility["c-1"] is False
        assert service.queue.get_open_item("c-1") is None

    @pytest.mark.asyncio
    async def test_second_reject_is_an_idempotent_success(self, service, submit, moderator):
        await submit("c-1", HARASSMENT_TEXT)
        await service.decide("c-1", moderator, "reject", "Harassment")

        again = await service.decide("c-1", moderator, "reject", "Harassment")

        assert again.success is True
        assert again.already_resolved is True
        assert again.message == "Already resolved: content c-1"
        assert len(await service.ledger.get_penalty_history("author-1")) == 1

    @pytest.mark.asyncio
    async def test_ban_after_approval_still_penalizes_author(
        self, service, submit, moderator, senior_moderator, content_store
    ):
        await submit("c-1", HARASSMENT_TEXT)
        await service.decide("c-1", moderator, "approve", "Banter between friends")

        outcome = await service.decide("c-1", senior_moderator, "ban", "Repeat offender elsewhere")

        assert outcome.success is True
        assert outcome.already_resolved is True
        assert outcome.penalty.penalty_type == PenaltyType.permanent_ban()
        (penalty,) = await service.ledger.get_penalty_history("author-1")
        assert penalty.moderation_action_id == outcome.action_id
        assert content_store.visibility["c-1"] is True

    @pytest.mark.asyncio
    async def test_ban_after_rejection_adds_to_automatic_penalty(self, service, submit, moderator, senior_moderator):
        await submit("c-1", HARASSMENT_TEXT)
        rejected = await service.decide("c-1", moderator, "reject", "Harassment")

        banned = await service.decide("c-1", senior_moderator, "ban", "Escalating to a ban")

        assert banned.penalty is not None
        active = {p.id: p.penalty_type for p in await service.get_active_penalties("author-1")}
        assert active == {
            rejected.penalty.id: PenaltyType.temporary_ban(7),
            banned.penalty.id: PenaltyType.permanent_ban(),
        }

    @pytest.mark.asyncio
    async def test_unknown_content(self, service, moderator):
        outcome = await service.decide("ghost", moderator, "approve", "fine")

        assert outcome.success is False
        assert outcome.error == "Not found: content ghost"

    @pytest.mark.asyncio
    async def test_visibility_failure_keeps_item_open(self, service, submit, moderator, content_store):
        await submit("c-1", HARASSMENT_TEXT)
        content_store.fail_times = 10

        outcome = await service.decide("c-1", moderator, "reject", "Harassment")

        assert outcome.success is False
        assert outcome.error == "Failed to apply moderation action"
        assert service.queue.get_open_item("c-1") is not None
        assert await service.get_active_penalties("author-1") == []
        events = await service.stores.audit.events_for_content("c-1")
        assert ("visibility", "failed") in [(e["event_type"], e["status"]) for e in events]

    @pytest.mark.asyncio
    async def test_transient_visibility_failure_is_retried(self, service, submit, moderator, content_store):
        await submit("c-1", HARASSMENT_TEXT)
        content_store.fail_times = 1

        outcome = await service.decide("c-1", moderator, "reject", "Harassment")

        assert outcome.success is True
        assert content_store.visibility["c-1"] is False

    @pytest.mark.asyncio
    async def test_approve_restores_visibility(self, service, submit, moderator, content_store):
        await submit("c-1", HARASSMENT_TEXT)
        assert content_store.visibility["c-1"] is False

        outcome = await service.decide("c-1", moderator, "approve", "Banter between friends")

        assert outcome.success is True
        assert outcome.penalty is None
        assert content_store.visibility["c-1"] is True
        assert service.queue.get_open_item("c-1") is None
        assert await service.queue.was_resolved("c-1") is True

    @pytest.mark.asyncio
    async def test_flag_keeps_item_in_queue(self, service, submit, moderator, content_store):
        await submit("c-1", HARASSMENT_TEXT)
        await service.dequeue_next(moderator)

        outcome = await service.decide("c-1", moderator, "flag", "Needs a second opinion")

        assert outcome.success is True
        item = service.queue.get_open_item("c-1")
        assert item.status is ModerationStatus.FLAGGED
        assert content_store.visibility["c-1"] is False

    @pytest.mark.asyncio
    async def test_warn_issues_warning_without_resolving(self, service, submit, moderator):
        await submit("c-1", SPAM_TEXT)

        outcome = await service.decide("c-1", moderator, "warn", "Please stop advertising")

        assert outcome.success is True
        assert outcome.penalty.penalty_type.kind is PenaltyKind.WARNING
        assert service.queue.get_open_item("c-1") is not None

    @pytest.mark.asyncio
    async def test_edit_changes_nothing_but_the_audit_trail(self, service, submit, moderator, content_store):
        await submit("c-1", SPAM_TEXT)
        calls = len(content_store.visibility_calls)

        outcome = await service.decide("c-1", moderator, "edit", "Removed link", notes="link stripped")

        assert outcome.success is True
        assert len(content_store.visibility_calls) == calls
        assert service.queue.get_open_item("c-1") is not None
        (action,) = await service.stores.audit.actions_for_content("c-1")
        assert action.action is ModerationActionType.EDIT
        assert action.notes == "link stripped"

    @pytest.mark.asyncio
    async def test_low_severity_reject_without_reports_has_no_penalty(self, service, submit, moderator):
        await submit("c-1", SPAM_TEXT)

        outcome = await service.decide("c-1", moderator, "reject", "Spam")

        assert outcome.success is True
        assert outcome.penalty is None

    @pytest.mark.asyncio
    async def test_reported_spam_rejection_warns(self, service, submit, moderator):
        await submit("c-1", SPAM_TEXT)
        for reporter in ("u-1", "u-2", "u-3"):
            await service.report_content("c-1", ReportReason.SPAM, reporter)

        outcome = await service.decide("c-1", moderator, "reject", "Spam")

        assert outcome.penalty is not None
        assert outcome.penalty.penalty_type == PenaltyType.warning()

    @pytest.mark.asyncio
    async def test_decision_on_unqueued_content_uses_audited_result(self, service, submit, moderator):
        result = await submit("c-1", "Lovely weather for a walk in the park today.")
        assert result.queue_item_id is None

        outcome = await service.decide("c-1", moderator, "reject", "Off topic")

        assert outcome.success is True
        assert outcome.penalty is None


class TestAssignment:
    @pytest.mark.asyncio
    async def test_unknown_content_is_not_assigned(self, service, submit, moderator):
        await submit("c-1", HARASSMENT_TEXT)

        assert await service.assign_moderator(str(uuid.uuid4()), moderator) is False
        assert service.queue.get_open_item("c-1").assigned_to is None

    @pytest.mark.asyncio
    async def test_inactive_moderator_is_not_assigned(self, service, submit):
        await submit("c-1", HARASSMENT_TEXT)

        assert await service.assign_moderator("c-1", "nobody") is False
        assert service.queue.get_open_item("c-1").assigned_to is None

    @pytest.mark.asyncio
    async def test_assignment_and_workload(self, service, submit, moderator, clock):
        await submit("c-1", HARASSMENT_TEXT)

        assert await service.assign_moderator("c-1", moderator) is True
        assert service.queue.get_open_item("c-1").assigned_to == moderator
        workload = await service.workflow.get_moderator_workload(moderator)
        assert workload.assigned_items == 1
        assert workload.completed_today == 0

        clock.advance(minutes=5)
        await service.decide("c-1", moderator, "reject", "Harassment")

        workload = await service.workflow.get_moderator_workload(moderator)
        assert workload.assigned_items == 0
        assert workload.completed_today == 1
        assert workload.average_time_per_item == 300

    @pytest.mark.asyncio
    async def test_claim_next_item(self, service, submit, moderator):
        await submit("c-low", SPAM_TEXT)
        await submit("c-high", HARASSMENT_TEXT)

        item = await service.dequeue_next(moderator)

        assert item.content_id == "c-high"
        assert item.status is ModerationStatus.UNDER_REVIEW
        assert item.assigned_to == moderator
        assert (await service.workflow.get_moderator_workload(moderator)).assigned_items == 1

    @pytest.mark.asyncio
    async def test_claim_requires_active_moderator(self, service, submit):
        await submit("c-1", HARASSMENT_TEXT)

        assert await service.dequeue_next("nobody") is None
        assert service.queue.get_open_item("c-1").status is ModerationStatus.PENDING

    @pytest.mark.asyncio
    async def test_reregistering_keeps_join_date(self, service, clock):
        first = await service.workflow.register_moderator("mod-9", "dana")
        clock.advance(days=2)

        again = await service.workflow.register_moderator("mod-9", "dana", "senior")

        assert again.joined_at == first.joined_at
        assert [m.id for m in await service.workflow.get_active_moderators()] == ["mod-9"]


class TestMetrics:
    @pytest.mark.asyncio
    async def test_metrics_without_reviews(self, service, moderator):
        metrics = await service.workflow.get_moderation_metrics(moderator, TimeRange.DAY)

        assert metrics.total_reviewed == 0
        assert metrics.accuracy_score == 1.0
        assert metrics.appeals_overturned == 0

    @pytest.mark.asyncio
    async def test_metrics_count_resolutions(self, service, submit, moderator):
        await submit("c-1", HARASSMENT_TEXT)
        await submit("c-2", SPAM_TEXT)
        await service.decide("c-1", moderator, "reject", "Harassment")
        await service.decide("c-2", moderator, "approve", "Fine")
        await service.decide("c-2", moderator, "approve", "Fine")

        metrics = await service.workflow.get_moderation_metrics(moderator, "week")

        assert metrics.total_reviewed == 2
        assert metrics.approved == 1
        assert metrics.rejected == 1
        assert metrics.accuracy_score == 1.0

    @pytest.mark.asyncio
    async def test_empty_system_stats(self, service):
        stats = await service.get_system_moderation_stats()

        assert stats.total_content_processed == 0
        assert stats.ai_accuracy == 1.0
        assert stats.false_positive_rate == 0.0
        assert stats.average_queue_time == 0

    @pytest.mark.asyncio
    async def test_system_stats_stay_in_bounds(self, service, submit, moderator, clock):
        await submit("c-1", HARASSMENT_TEXT)
        await submit("c-2", SPAM_TEXT)
        await submit("c-3", "Lovely weather for a walk in the park today.")
        clock.advance(minutes=10)
        await service.decide("c-1", moderator, "reject", "Harassment")
        await service.decide("c-2", moderator, "approve", "Not spam")

        stats = await service.get_system_moderation_stats(TimeRange.DAY)

        assert stats.total_content_processed == 3
        assert stats.auto_approved == 1
        assert stats.human_reviewed == 2
        assert stats.ai_accuracy == 0.5
        assert stats.false_positive_rate == 0.5
        assert 0.0 <= stats.ai_accuracy <= 1.0
        assert 0.0 <= stats.false_positive_rate <= 1.0
        assert stats.average_queue_time == 600
