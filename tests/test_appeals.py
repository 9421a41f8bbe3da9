"""
Tests for appeals.

Tests cover:
- Submission and pending listings
- Approval reversing tied penalties atomically
- Decided appeals refusing a second review
- Manual removal racing an approval
- Overturned decisions feeding moderator accuracy
"""

import asyncio

import pytest
import pytest_asyncio

from warden.moderation.models import AppealDecision, AppealStatus, PenaltyType


@pytest_asyncio.fixture
async def rejected(service, submit, moderator):
    """Harassment rejected by a moderator, leaving the author with a temporary ban."""
    await submit("c-1", "I hate you, you worthless nazi")
    outcome = await service.decide("c-1", moderator, "reject", "Harassment")
    assert outcome.penalty is not None
    return outcome


class TestSubmission:
    @pytest.mark.asyncio
    async def test_new_appeal_is_pending(self, service):
        appeal = await service.submit_appeal("author-1", "c-1", "action-1", "It was a joke", evidence="chat log")

        assert appeal.status is AppealStatus.PENDING
        assert appeal.decision is None
        assert (await service.appeals.get_appeal(appeal.id)).evidence == "chat log"

    @pytest.mark.asyncio
    async def test_pending_listing(self, service, clock):
        first = await service.submit_appeal("author-1", "c-1", "a-1", "first")
        clock.advance(minutes=1)
        second = await service.submit_appeal("author-2", "c-2", "a-2", "second")
        await service.review_appeal(first.id, "mod-1", AppealDecision.REJECTED, "Upheld")

        pending = await service.appeals.get_pending_appeals()

        assert [a.id for a in pending] == [second.id]
        assert [a.id for a in await service.appeals.get_user_appeals("author-1")] == [first.id]


class TestReview:
    @pytest.mark.asyncio
    async def test_approval_reverses_tied_penalty(self, service, rejected):
        appeal = await service.submit_appeal("author-1", "c-1", rejected.action_id, "Out of context")

        assert await service.review_appeal(appeal.id, "mod-2", "approved", "Context shows banter") is True

        assert await service.get_active_penalties("author-1") == []
        penalty = await service.ledger.get_penalty(rejected.penalty.id)
        assert penalty.removed_by == "mod-2"
        assert await service.remove_penalty(rejected.penalty.id, "late removal") is False

    @pytest.mark.asyncio
    async def test_rejection_keeps_penalty(self, service, rejected):
        appeal = await service.submit_appeal("author-1", "c-1", rejected.action_id, "Please")

        assert await service.review_appeal(appeal.id, "mod-2", AppealDecision.REJECTED, "Clear harassment") is True

        stored = await service.appeals.get_appeal(appeal.id)
        assert stored.status is AppealStatus.REJECTED
        assert stored.decision_reason == "Clear harassment"
        assert [p.id for p in await service.get_active_penalties("author-1")] == [rejected.penalty.id]

    @pytest.mark.asyncio
    async def test_approval_leaves_unrelated_penalties(self, service, rejected):
        other = await service.apply_penalty("author-1", PenaltyType.warning(), "earlier spam", "mod-1", "c-other")
        appeal = await service.submit_appeal("author-1", "c-1", rejected.action_id, "Out of context")

        await service.review_appeal(appeal.id, "mod-2", "approved", "ok")

        assert [p.id for p in await service.get_active_penalties("author-1")] == [other.id]

    @pytest.mark.asyncio
    async def test_unknown_appeal(self, service):
        assert await service.review_appeal("missing", "mod-1", "approved", "x") is False

    @pytest.mark.asyncio
    async def test_decided_appeal_cannot_be_reviewed_again(self, service, rejected):
        appeal = await service.submit_appeal("author-1", "c-1", rejected.action_id, "Out of context")
        await service.review_appeal(appeal.id, "mod-2", "approved", "ok")

        assert await service.review_appeal(appeal.id, "mod-3", "rejected", "changed my mind") is False

        stored = await service.appeals.get_appeal(appeal.id)
        assert stored.status is AppealStatus.APPROVED
        assert stored.reviewed_by == "mod-2"

    @pytest.mark.asyncio
    async def test_concurrent_reviews_decide_once(self, service, rejected):
        appeal = await service.submit_appeal("author-1", "c-1", rejected.action_id, "Out of context")

        results = await asyncio.gather(
            service.review_appeal(appeal.id, "mod-2", "approved", "a"),
            service.review_appeal(appeal.id, "mod-3", "rejected", "b"),
        )

        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_removal_racing_approval_removes_once(self, service, rejected):
        appeal = await service.submit_appeal("author-1", "c-1", rejected.action_id, "Out of context")

        removed, reviewed = await asyncio.gather(
            service.remove_penalty(rejected.penalty.id, "Lifted by support", removed_by="mod-3"),
            service.review_appeal(appeal.id, "mod-2", "approved", "Context shows banter"),
        )

        assert reviewed is True
        assert await service.get_active_penalties("author-1") == []
        penalty = await service.ledger.get_penalty(rejected.penalty.id)
        if removed:
            assert (penalty.removed_by, penalty.removed_reason) == ("mod-3", "Lifted by support")
        else:
            assert penalty.removed_by == "mod-2"
            assert penalty.removed_reason == f"Appeal {appeal.id} approved: Context shows banter"
        assert await service.remove_penalty(rejected.penalty.id, "again") is False

    @pytest.mark.asyncio
    async def test_overturned_decision_lowers_accuracy(self, service, rejected, moderator):
        appeal = await service.submit_appeal("author-1", "c-1", rejected.action_id, "Out of context")
        await service.review_appeal(appeal.id, "mod-2", "approved", "ok")

        metrics = await service.workflow.get_moderation_metrics(moderator)

        assert metrics.total_reviewed == 1
        assert metrics.appeals_overturned == 1
        assert metrics.accuracy_score == 0.0
