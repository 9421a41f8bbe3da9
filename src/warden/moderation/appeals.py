from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Union

from ..observability import ObservabilityManager
from ..services.appeal_store import AppealStore
from ..utils import new_id, utcnow
from .models import Appeal, AppealDecision, AppealStatus

log = logging.getLogger("warden.appeals")


class AppealService:
    """User appeals against moderation decisions.

    `pending -> approved | rejected`, terminal once decided. Reviewing an
    already-decided appeal is refused and leaves the first decision intact.
    Approval reverses the user's penalties tied to the appealed decision in
    the same transaction as the status change.
    """

    def __init__(
        self,
        store: AppealStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        observability: Optional[ObservabilityManager] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._obs = observability

    async def submit_appeal(
        self,
        user_id: str,
        content_id: str,
        moderation_action_id: str,
        reason: str,
        evidence: Optional[str] = None,
    ) -> Appeal:
        appeal = Appeal(
            id=new_id(),
            user_id=user_id,
            content_id=content_id,
            moderation_action_id=moderation_action_id,
            reason=reason,
            evidence=evidence,
            status=AppealStatus.PENDING,
            submitted_at=self._clock(),
        )
        await self._store.add(appeal)
        log.info("Appeal %s submitted by %s for content %s", appeal.id, user_id, content_id)
        if self._obs:
            self._obs.log_appeal("submitted", appeal.id, user_id, True, {"content_id": content_id})
        return appeal

    async def review_appeal(
        self,
        appeal_id: str,
        moderator_id: str,
        decision: Union[AppealDecision, str],
        reason: str,
    ) -> bool:
        """Decide a pending appeal. Returns False for unknown or already-decided appeals."""

        decision = AppealDecision(decision)
        appeal = await self._store.get(appeal_id)
        if appeal is None:
            log.info("Appeal %s not found", appeal_id)
            return False
        if appeal.status is not AppealStatus.PENDING:
            log.warning("Appeal %s already decided (%s); refusing re-review by %s", appeal_id, appeal.status.value, moderator_id)
            return False

        decided, reversed_ids = await self._store.decide(
            appeal_id,
            decision=decision,
            decision_reason=reason,
            reviewed_by=moderator_id,
            reviewed_at=self._clock(),
        )
        if not decided:
            log.warning("Appeal %s was decided concurrently; refusing re-review by %s", appeal_id, moderator_id)
            return False

        log.info(
            "Appeal %s %s by %s; reversed penalties: %s",
            appeal_id,
            decision.value,
            moderator_id,
            ", ".join(reversed_ids) or "none",
        )
        if self._obs:
            self._obs.log_appeal(
                decision.value,
                appeal_id,
                appeal.user_id,
                True,
                {"moderator_id": moderator_id, "reversed_penalties": reversed_ids},
            )
        return True

    async def get_appeal(self, appeal_id: str) -> Optional[Appeal]:
        return await self._store.get(appeal_id)

    async def get_pending_appeals(self, limit: int = 50) -> list[Appeal]:
        return await self._store.list_pending(limit)

    async def get_user_appeals(self, user_id: str) -> list[Appeal]:
        return await self._store.list_for_user(user_id)
