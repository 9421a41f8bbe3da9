from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Union

from ..errors import AlreadyResolvedError, ModerationError, NotFoundError, PermissionDeniedError
from ..interfaces import ContentStore, ReputationProvider
from ..observability import ObservabilityManager
from ..services.appeal_store import AppealStore
from ..services.audit_store import ModerationAuditStore
from ..services.idempotency_store import ModerationIdempotencyStore
from ..services.moderator_store import ModeratorStore
from ..utils import KeyedLocks, new_id, retry_async, to_iso, utcnow
from .models import (
    ContentApprovalResult,
    ModerationAction,
    ModerationActionType,
    ModerationMetrics,
    ModerationQueueItem,
    ModerationResult,
    ModerationStatus,
    Moderator,
    ModeratorRole,
    ModeratorWorkload,
    PenaltyType,
    QueueFilter,
    SystemModerationStats,
    TimeRange,
    UserPenalty,
)
from .penalties import PenaltyLedger, PenaltyPolicy
from .queue import ReviewQueue

log = logging.getLogger("warden.workflow")

MODERATOR_ROLE = "moderator"
APPLY_FAILED = "Failed to apply moderation action"

_PRIVILEGED_ACTIONS = frozenset({ModerationActionType.BAN, ModerationActionType.DELETE})
_PRIVILEGED_ROLES = frozenset({ModeratorRole.SENIOR, ModeratorRole.ADMIN})
_HIDING_ACTIONS = frozenset(
    {
        ModerationActionType.REJECT,
        ModerationActionType.DELETE,
        ModerationActionType.BAN,
        ModerationActionType.FLAG,
    }
)


def _unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class ModeratorWorkflow:
    """Moderator roster, assignments and human decisions.

    Decisions on one piece of content are serialized; decisions on
    different content proceed concurrently.
    """

    def __init__(
        self,
        *,
        queue: ReviewQueue,
        ledger: PenaltyLedger,
        policy: PenaltyPolicy,
        moderators: ModeratorStore,
        audit: ModerationAuditStore,
        appeals: AppealStore,
        idempotency: ModerationIdempotencyStore,
        content_store: ContentStore,
        reputation: ReputationProvider,
        ban_days: int = 0,
        visibility_attempts: int = 3,
        retry_base_delay: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
        observability: Optional[ObservabilityManager] = None,
    ) -> None:
        self._queue = queue
        self._ledger = ledger
        self._policy = policy
        self._moderators = moderators
        self._audit = audit
        self._appeals = appeals
        self._idempotency = idempotency
        self._content_store = content_store
        self._reputation = reputation
        self._ban_days = int(ban_days)
        self._visibility_attempts = max(1, int(visibility_attempts))
        self._retry_base_delay = retry_base_delay
        self._clock = clock
        self._obs = observability
        self._locks = KeyedLocks()

    # Roster

    async def register_moderator(
        self,
        moderator_id: str,
        username: str,
        role: Union[ModeratorRole, str] = ModeratorRole.STANDARD,
    ) -> Moderator:
        existing = await self._moderators.get(moderator_id)
        moderator = Moderator(
            id=moderator_id,
            username=username,
            role=ModeratorRole(role),
            is_active=True,
            joined_at=existing.joined_at if existing else self._clock(),
        )
        await self._moderators.upsert(moderator)
        log.info("Registered moderator %s (%s) as %s", moderator_id, username, moderator.role.value)
        return moderator

    async def set_moderator_active(self, moderator_id: str, active: bool) -> bool:
        changed = await self._moderators.set_active(moderator_id, active)
        if changed:
            log.info("Moderator %s is now %s", moderator_id, "active" if active else "inactive")
        return changed

    async def get_active_moderators(self) -> list[Moderator]:
        return await self._moderators.list_active()

    async def _active_moderator(self, moderator_id: str) -> Optional[Moderator]:
        moderator = await self._moderators.get(moderator_id)
        if moderator is None or not moderator.is_active:
            return None
        return moderator

    async def _check_permission(self, moderator_id: str, action: ModerationActionType) -> Moderator:
        moderator = await self._active_moderator(moderator_id)
        if moderator is None:
            raise PermissionDeniedError(f"{moderator_id} does not have permission for this action (not an active moderator)")
        try:
            allowed = await self._reputation.has_role(moderator_id, MODERATOR_ROLE)
        except Exception as e:
            log.exception("Role check failed for %s", moderator_id)
            raise PermissionDeniedError(f"could not verify permission for {moderator_id}") from e
        if not allowed:
            raise PermissionDeniedError(f"{moderator_id} does not have permission for this action (missing moderator role)")
        if action in _PRIVILEGED_ACTIONS and moderator.role not in _PRIVILEGED_ROLES:
            raise PermissionDeniedError(f"{moderator_id} does not have permission to {action.value}; a senior moderator is required")
        return moderator

    # Assignment

    async def assign_moderator(self, content_id: str, moderator_id: str) -> bool:
        """Assign the open queue item for `content_id`. False for unknown/inactive moderators or no open item."""

        if await self._active_moderator(moderator_id) is None:
            log.info("Assignment of %s refused: %s is not an active moderator", content_id, moderator_id)
            return False
        item = self._queue.get_open_item(content_id)
        if item is None:
            log.info("Assignment of %s refused: no open queue item", content_id)
            return False

        async with self._locks.get(content_id):
            if not await self._queue.assign(item.id, moderator_id):
                return False
            await self._moderators.assign(
                content_id=content_id,
                queue_item_id=item.id,
                moderator_id=moderator_id,
                assigned_at=self._clock(),
            )

        log.info("Assigned %s to %s", content_id, moderator_id)
        if self._obs:
            self._obs.log_queue_event("assign", content_id, {"item_id": item.id, "moderator_id": moderator_id})
        return True

    async def claim_next_item(
        self,
        moderator_id: str,
        flt: Optional[QueueFilter] = None,
    ) -> Optional[ModerationQueueItem]:
        """Take the highest-ranked ready item for review and record the assignment."""

        if await self._active_moderator(moderator_id) is None:
            log.info("Claim refused: %s is not an active moderator", moderator_id)
            return None
        item = await self._queue.dequeue_next(flt, moderator_id=moderator_id)
        if item is None:
            return None
        await self._moderators.assign(
            content_id=item.content_id,
            queue_item_id=item.id,
            moderator_id=moderator_id,
            assigned_at=self._clock(),
        )
        return item

    # Decisions

    async def process_content_approval(
        self,
        content_id: str,
        moderator_id: str,
        action: Union[ModerationActionType, str],
        reason: str,
        notes: Optional[str] = None,
    ) -> ContentApprovalResult:
        action = ModerationActionType(action)
        try:
            await self._check_permission(moderator_id, action)
        except PermissionDeniedError as e:
            log.warning("Decision %s on %s refused: %s", action.value, content_id, e)
            if self._obs:
                self._obs.log_decision(content_id, moderator_id, action.value, False, error=e.user_message())
            return ContentApprovalResult(success=False, error=e.user_message())

        async with self._locks.get(content_id):
            try:
                outcome = await self._apply_decision(content_id, moderator_id, action, reason, notes)
            except ModerationError as e:
                outcome = ContentApprovalResult(success=False, error=e.user_message())
            except Exception as e:
                log.exception("Decision %s on %s by %s failed", action.value, content_id, moderator_id)
                if self._obs:
                    self._obs.log_error_with_context(e, {"content_id": content_id, "moderator_id": moderator_id})
                outcome = ContentApprovalResult(success=False, error=APPLY_FAILED)
        self._locks.discard(content_id)

        if outcome.success:
            log.info("Moderator %s: %s on %s (%s)", moderator_id, action.value, content_id, outcome.message)
        else:
            log.warning("Moderator %s: %s on %s failed: %s", moderator_id, action.value, content_id, outcome.error)
        if self._obs:
            self._obs.log_decision(
                content_id,
                moderator_id,
                action.value,
                outcome.success,
                error=outcome.error,
                details={
                    "action_id": outcome.action_id,
                    "penalty_id": outcome.penalty.id if outcome.penalty else None,
                    "already_resolved": outcome.already_resolved,
                },
            )
        return outcome

    async def _apply_decision(
        self,
        content_id: str,
        moderator_id: str,
        action: ModerationActionType,
        reason: str,
        notes: Optional[str],
    ) -> ContentApprovalResult:
        item = self._queue.get_open_item(content_id)
        result: Optional[ModerationResult] = None
        already_resolved = False
        if item is not None:
            author_id, result, report_count = item.author_id, item.moderation_result, item.report_count
        else:
            if action.resolves and await self._queue.was_resolved(content_id):
                # A ban targets the author, so it still applies to resolved content.
                if action is not ModerationActionType.BAN:
                    return ContentApprovalResult(
                        success=True,
                        message=AlreadyResolvedError(f"content {content_id}").user_message(),
                        already_resolved=True,
                    )
                already_resolved = True
            record = await self._content_store.get_content(content_id)
            if record is None:
                raise NotFoundError(f"content {content_id}")
            author_id, report_count = record.author_id, 0
            audited = await self._audit.latest_result(content_id)
            if audited is not None:
                result = audited.result

        visible: Optional[bool] = None
        if action is ModerationActionType.APPROVE:
            visible = True
        elif action in _HIDING_ACTIONS:
            visible = False
        if visible is not None and not already_resolved:
            if not await self._set_visibility(content_id, visible):
                return ContentApprovalResult(success=False, error=APPLY_FAILED)

        now = self._clock()
        record_action = ModerationAction(
            id=new_id(),
            content_id=content_id,
            moderator_id=moderator_id,
            action=action,
            reason=reason,
            notes=notes,
            created_at=now,
            queue_item_id=item.id if item else None,
        )
        await self._audit.add_action(record_action, review_seconds=await self._review_seconds(content_id, moderator_id, item, now))

        penalty: Optional[UserPenalty] = None
        if action in PenaltyPolicy.TRIGGERING_ACTIONS:
            penalty_type = self._policy.evaluate(action, result, report_count)
            if penalty_type is not None:
                guard_key = f"penalty:{item.id if item else content_id}"
                penalty = await self._penalize_once(guard_key, author_id, penalty_type, reason, moderator_id, content_id, record_action.id)
        elif action in (ModerationActionType.BAN, ModerationActionType.WARN):
            if action is ModerationActionType.WARN:
                penalty_type = PenaltyType.warning()
            elif self._ban_days > 0:
                penalty_type = PenaltyType.temporary_ban(self._ban_days)
            else:
                penalty_type = PenaltyType.permanent_ban()
            penalty = await self._ledger.apply_user_penalty(
                author_id,
                penalty_type,
                reason,
                moderator_id,
                content_id,
                moderation_action_id=record_action.id,
            )

        if item is not None:
            if action is ModerationActionType.FLAG:
                await self._queue.release(item.id, status=ModerationStatus.FLAGGED)
            elif action.resolves:
                status = ModerationStatus.APPROVED if action is ModerationActionType.APPROVE else ModerationStatus.REJECTED
                await self._queue.resolve(item.id, status=status, resolution=action.value, resolved_by=moderator_id)
                await self._moderators.complete_for_content(content_id, outcome=action.value, completed_at=now)

        return ContentApprovalResult(
            success=True,
            message=f"{action.value} applied to content {content_id}",
            action_id=record_action.id,
            penalty=penalty,
            already_resolved=already_resolved,
        )

    async def _review_seconds(
        self,
        content_id: str,
        moderator_id: str,
        item: Optional[ModerationQueueItem],
        now: datetime,
    ) -> Optional[int]:
        assignment = await self._moderators.open_assignment(content_id, moderator_id)
        started = assignment.assigned_at if assignment else (item.created_at if item else None)
        if started is None:
            return None
        return int(max(0.0, (now - started).total_seconds()))

    async def _penalize_once(
        self,
        guard_key: str,
        user_id: str,
        penalty_type: PenaltyType,
        reason: str,
        moderator_id: str,
        content_id: str,
        action_id: str,
    ) -> Optional[UserPenalty]:
        if not await self._idempotency.claim(guard_key, to_iso(self._clock())):
            log.info("Penalty for %s already applied; skipping", guard_key)
            return None
        try:
            return await self._ledger.apply_user_penalty(
                user_id,
                penalty_type,
                reason,
                moderator_id,
                content_id,
                moderation_action_id=action_id,
            )
        except Exception:
            await self._idempotency.release(guard_key)
            raise

    async def _set_visibility(self, content_id: str, visible: bool) -> bool:
        try:
            await retry_async(
                lambda: self._content_store.set_visibility(content_id, visible),
                tries=self._visibility_attempts,
                base_delay=self._retry_base_delay,
            )
            return True
        except Exception as e:
            log.exception("Failed to set visibility=%s for %s", visible, content_id)
            await self._audit.add_event(
                event_type="visibility",
                status="failed",
                created_at_iso=to_iso(self._clock()),
                details={"visible": visible, "error": repr(e)},
                content_id=content_id,
            )
            if self._obs:
                self._obs.log_error_with_context(e, {"content_id": content_id, "operation": "set_visibility"})
            return False

    # Read-only aggregations

    async def get_moderator_workload(self, moderator_id: str) -> ModeratorWorkload:
        now = self._clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        summary = await self._audit.moderator_summary(moderator_id, None)
        return ModeratorWorkload(
            moderator_id=moderator_id,
            assigned_items=await self._moderators.count_open_assignments(moderator_id),
            completed_today=await self._audit.count_resolutions_since(moderator_id, midnight),
            average_time_per_item=summary.average_review_seconds,
        )

    async def get_moderation_metrics(
        self,
        moderator_id: str,
        time_range: Union[TimeRange, str] = TimeRange.WEEK,
    ) -> ModerationMetrics:
        time_range = TimeRange(time_range)
        since = time_range.start(self._clock())
        summary = await self._audit.moderator_summary(moderator_id, since)
        overturned = await self._appeals.count_overturned(moderator_id, since)
        accuracy = 1.0 if summary.total == 0 else _unit(1.0 - overturned / summary.total)
        return ModerationMetrics(
            moderator_id=moderator_id,
            time_range=time_range,
            total_reviewed=summary.total,
            approved=summary.approved,
            rejected=summary.rejected,
            average_time_per_review=summary.average_review_seconds,
            accuracy_score=accuracy,
            appeals_overturned=overturned,
        )

    async def get_system_moderation_stats(self, time_range: Union[TimeRange, str] = TimeRange.WEEK) -> SystemModerationStats:
        time_range = TimeRange(time_range)
        since = time_range.start(self._clock())
        automatic = await self._audit.automatic_summary(since)
        agreement = await self._audit.agreement_summary(since)
        waits = await self._queue.resolved_wait_times(since)

        ai_accuracy = _unit(agreement.confirmed / agreement.judged) if agreement.judged else 1.0
        false_positive_rate = _unit(agreement.false_positive / agreement.auto_positive) if agreement.auto_positive else 0.0
        return SystemModerationStats(
            time_range=time_range,
            total_content_processed=automatic.total,
            auto_approved=automatic.auto_approved,
            auto_flagged=automatic.auto_flagged,
            auto_rejected=automatic.auto_rejected,
            human_reviewed=await self._audit.count_human_resolutions(since),
            average_queue_time=int(sum(waits) / len(waits)) if waits else 0,
            ai_accuracy=ai_accuracy,
            false_positive_rate=false_positive_rate,
        )
