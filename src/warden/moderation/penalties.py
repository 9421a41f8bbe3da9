from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from ..interfaces import ReputationProvider
from ..observability import ObservabilityManager
from ..services.audit_store import ModerationAuditStore
from ..services.penalty_store import PenaltyStore
from ..utils import KeyedLocks, new_id, to_iso, utcnow
from .config_schema import FlaggingRulesConfiguration
from .models import (
    ModerationActionType,
    ModerationFlag,
    ModerationResult,
    PenaltyType,
    Severity,
    UserPenalty,
)

log = logging.getLogger("warden.penalties")


class PenaltyPolicy:
    """Which penalty, if any, a moderator decision triggers automatically.

    Only `reject` and `delete` trigger a penalty, and only when the
    underlying flags are high/critical severity or the content collected at
    least the multiple-reports threshold of user reports.
    """

    TRIGGERING_ACTIONS = frozenset({ModerationActionType.REJECT, ModerationActionType.DELETE})
    SEVERE_FLAGS = frozenset({ModerationFlag.HARASSMENT, ModerationFlag.HATE_SPEECH})

    def __init__(
        self,
        rules: Callable[[], FlaggingRulesConfiguration],
        *,
        severe_ban_days: int = 7,
        high_ban_days: int = 3,
    ) -> None:
        self._rules = rules
        self.severe_ban_days = severe_ban_days
        self.high_ban_days = high_ban_days

    def evaluate(
        self,
        action: ModerationActionType,
        result: Optional[ModerationResult],
        report_count: int = 0,
    ) -> Optional[PenaltyType]:
        if action not in self.TRIGGERING_ACTIONS:
            return None
        severity = result.severity if result is not None else Severity.LOW
        flags = result.flags if result is not None else frozenset()
        severe = severity in (Severity.HIGH, Severity.CRITICAL)
        reported = report_count >= self._rules().multiple_reports_threshold
        if not (severe or reported):
            return None

        if severity is Severity.CRITICAL or flags & self.SEVERE_FLAGS:
            return PenaltyType.temporary_ban(self.severe_ban_days)
        if severity is Severity.HIGH:
            return PenaltyType.temporary_ban(self.high_ban_days)
        return PenaltyType.warning()


class PenaltyLedger:
    """Append-only record of user penalties.

    Applies are serialized per user. Removal is a compare-and-set on the
    record, so concurrent removals (or a removal racing an appeal reversal)
    succeed at most once.
    """

    def __init__(
        self,
        store: PenaltyStore,
        reputation: ReputationProvider,
        audit: ModerationAuditStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        observability: Optional[ObservabilityManager] = None,
    ) -> None:
        self._store = store
        self._reputation = reputation
        self._audit = audit
        self._clock = clock
        self._obs = observability
        self._user_locks = KeyedLocks()

    async def apply_user_penalty(
        self,
        user_id: str,
        penalty: PenaltyType,
        reason: str,
        moderator_id: str,
        content_id: Optional[str] = None,
        *,
        moderation_action_id: Optional[str] = None,
    ) -> UserPenalty:
        applied_at = self._clock()
        record = UserPenalty(
            id=new_id(),
            user_id=user_id,
            moderator_id=moderator_id,
            content_id=content_id,
            penalty_type=penalty,
            reason=reason,
            applied_at=applied_at,
            # A non-positive ban length yields an already-expired penalty.
            expires_at=penalty.expires_at(applied_at),
            moderation_action_id=moderation_action_id,
        )
        async with self._user_locks.get(user_id):
            await self._store.add(record)

        log.info("Applied %s to user %s (penalty %s): %s", penalty, user_id, record.id, reason)
        if self._obs:
            self._obs.log_penalty(
                "applied",
                record.id,
                user_id,
                {"penalty": str(penalty), "content_id": content_id, "moderator_id": moderator_id},
            )

        await self._fire_effect(record)
        return record

    async def _fire_effect(self, record: UserPenalty) -> None:
        try:
            await self._reputation.apply_penalty_effect(record.user_id, record)
        except Exception as e:
            # The penalty itself is committed; the missed side effect is recorded for follow-up.
            log.exception("Penalty effect failed for %s", record.id)
            await self._audit.add_event(
                event_type="penalty_effect",
                status="failed",
                created_at_iso=to_iso(self._clock()),
                details={"penalty_id": record.id, "error": repr(e)},
                content_id=record.content_id,
                user_id=record.user_id,
            )
            if self._obs:
                self._obs.log_error_with_context(e, {"user_id": record.user_id, "penalty_id": record.id})

    async def remove_penalty(self, penalty_id: str, reason: str, *, removed_by: Optional[str] = None) -> bool:
        """Mark a penalty removed. Returns False if unknown or already removed."""

        removed = await self._store.mark_removed(
            penalty_id,
            reason=reason,
            removed_by=removed_by,
            removed_at=self._clock(),
        )
        if removed:
            log.info("Removed penalty %s: %s", penalty_id, reason)
            if self._obs:
                self._obs.log_penalty("removed", penalty_id, removed_by or "", {"reason": reason})
        else:
            log.info("Penalty %s not removed (unknown or already removed)", penalty_id)
        return removed

    async def get_penalty(self, penalty_id: str) -> Optional[UserPenalty]:
        return await self._store.get(penalty_id)

    async def get_active_penalties(self, user_id: str) -> list[UserPenalty]:
        now = self._clock()
        penalties = await self._store.list_for_user(user_id, include_removed=False)
        return [p for p in penalties if p.is_active_at(now)]

    async def get_penalty_history(self, user_id: str) -> list[UserPenalty]:
        return await self._store.list_for_user(user_id, include_removed=True)
