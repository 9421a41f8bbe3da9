"""
Tests for the penalty ledger and the automatic penalty policy.

Tests cover:
- Expiry evaluated at call time, including non-positive ban lengths
- Compare-and-set removal (at most one removal succeeds)
- Reputation side effects and their failure handling
- PenaltyPolicy decisions
"""

import asyncio
from datetime import datetime, timezone

import pytest

from warden.moderation.config_schema import FlaggingRulesConfiguration
from warden.moderation.models import (
    ContentType,
    ModerationActionType,
    ModerationFlag,
    ModerationResult,
    ModerationStatus,
    PenaltyKind,
    PenaltyType,
    Severity,
)
from warden.moderation.penalties import PenaltyPolicy


def _result(flags, severity):
    return ModerationResult(
        content_id="c-1",
        content_type=ContentType.POST,
        status=ModerationStatus.PENDING,
        flags=frozenset(flags),
        confidence=0.9,
        severity=severity,
        reason="test",
        detected_pii=(),
        created_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
    )


class TestPenaltyLedger:
    @pytest.mark.asyncio
    async def test_negative_days_is_immediately_inactive(self, service):
        penalty = await service.apply_penalty("user-1", PenaltyType.temporary_ban(-1), "test", "mod-1")

        assert penalty.is_active_at(penalty.applied_at) is False
        assert await service.get_active_penalties("user-1") == []
        assert len(await service.ledger.get_penalty_history("user-1")) == 1

    @pytest.mark.asyncio
    async def test_zero_days_is_immediately_inactive(self, service):
        await service.apply_penalty("user-1", PenaltyType.temporary_ban(0), "test", "mod-1")

        assert await service.get_active_penalties("user-1") == []

    @pytest.mark.asyncio
    async def test_temporary_ban_expires_with_time(self, service, clock):
        penalty = await service.apply_penalty("user-1", PenaltyType.temporary_ban(3), "spam", "mod-1", "c-1")

        assert [p.id for p in await service.get_active_penalties("user-1")] == [penalty.id]

        clock.advance(days=3, seconds=1)
        assert await service.get_active_penalties("user-1") == []

    @pytest.mark.asyncio
    async def test_warning_and_permanent_ban_never_expire(self, service, clock):
        await service.apply_penalty("user-1", PenaltyType.warning(), "rude", "mod-1")
        await service.apply_penalty("user-1", PenaltyType.permanent_ban(), "repeat offender", "mod-1")

        clock.advance(days=3650)

        kinds = sorted(p.penalty_type.kind.value for p in await service.get_active_penalties("user-1"))
        assert kinds == [PenaltyKind.PERMANENT_BAN.value, PenaltyKind.WARNING.value]

    @pytest.mark.asyncio
    async def test_remove_keeps_history(self, service):
        penalty = await service.apply_penalty("user-1", PenaltyType.warning(), "rude", "mod-1")

        assert await service.remove_penalty(penalty.id, "issued in error", removed_by="mod-2") is True
        assert await service.remove_penalty(penalty.id, "again") is False

        assert await service.get_active_penalties("user-1") == []
        (stored,) = await service.ledger.get_penalty_history("user-1")
        assert stored.removed_reason == "issued in error"
        assert stored.removed_by == "mod-2"

    @pytest.mark.asyncio
    async def test_concurrent_removals_succeed_once(self, service):
        penalty = await service.apply_penalty("user-1", PenaltyType.temporary_ban(7), "abuse", "mod-1")

        results = await asyncio.gather(*(service.remove_penalty(penalty.id, f"r{i}") for i in range(5)))

        assert sorted(results) == [False, False, False, False, True]

    @pytest.mark.asyncio
    async def test_remove_unknown_penalty(self, service):
        assert await service.remove_penalty("nope", "whatever") is False

    @pytest.mark.asyncio
    async def test_reputation_effect_fired(self, service, reputation):
        penalty = await service.apply_penalty("user-1", PenaltyType.warning(), "rude", "mod-1")

        assert reputation.applied_effects == [("user-1", penalty)]

    @pytest.mark.asyncio
    async def test_failed_effect_keeps_penalty(self, service, reputation):
        reputation.fail_effects = True

        penalty = await service.apply_penalty("user-1", PenaltyType.warning(), "rude", "mod-1", "c-9")

        assert [p.id for p in await service.get_active_penalties("user-1")] == [penalty.id]
        events = await service.stores.audit.events_for_content("c-9")
        assert [(e["event_type"], e["status"]) for e in events] == [("penalty_effect", "failed")]


class TestPenaltyPolicy:
    @pytest.fixture
    def policy(self):
        rules = FlaggingRulesConfiguration()
        return PenaltyPolicy(lambda: rules)

    def test_only_reject_and_delete_trigger(self, policy):
        result = _result({ModerationFlag.HARASSMENT}, Severity.HIGH)

        for action in (ModerationActionType.APPROVE, ModerationActionType.FLAG, ModerationActionType.EDIT):
            assert policy.evaluate(action, result, 10) is None
        assert policy.evaluate(ModerationActionType.DELETE, result, 0) is not None

    def test_low_severity_without_reports_is_not_penalized(self, policy):
        assert policy.evaluate(ModerationActionType.REJECT, _result({ModerationFlag.SPAM}, Severity.LOW), 2) is None

    def test_report_driven_rejection_warns(self, policy):
        penalty = policy.evaluate(ModerationActionType.REJECT, _result({ModerationFlag.SPAM}, Severity.LOW), 3)

        assert penalty == PenaltyType.warning()

    def test_harassment_or_hate_gets_a_week(self, policy):
        result = _result({ModerationFlag.HARASSMENT, ModerationFlag.HATE_SPEECH}, Severity.HIGH)

        assert policy.evaluate(ModerationActionType.REJECT, result, 0) == PenaltyType.temporary_ban(7)

    def test_other_high_severity_gets_three_days(self, policy):
        result = _result({ModerationFlag.VIOLENT_CONTENT}, Severity.HIGH)

        assert policy.evaluate(ModerationActionType.REJECT, result, 0) == PenaltyType.temporary_ban(3)

    def test_critical_gets_a_week(self, policy):
        result = _result({ModerationFlag.VIOLENT_CONTENT}, Severity.CRITICAL)

        assert policy.evaluate(ModerationActionType.REJECT, result, 0) == PenaltyType.temporary_ban(7)

    def test_missing_result_relies_on_reports(self, policy):
        assert policy.evaluate(ModerationActionType.REJECT, None, 0) is None
        assert policy.evaluate(ModerationActionType.REJECT, None, 3) == PenaltyType.warning()

    def test_threshold_is_read_live(self):
        current = {"rules": FlaggingRulesConfiguration()}
        policy = PenaltyPolicy(lambda: current["rules"])
        result = _result({ModerationFlag.SPAM}, Severity.LOW)

        assert policy.evaluate(ModerationActionType.REJECT, result, 2) is None
        current["rules"] = FlaggingRulesConfiguration(multiple_reports_threshold=2)
        assert policy.evaluate(ModerationActionType.REJECT, result, 2) == PenaltyType.warning()
