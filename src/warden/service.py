"""
Wiring for the moderation pipeline.

`create_service` builds every store and component from `Settings`, owns
their lifetimes and exposes the pipeline through `ModerationService`.
Nothing here is a module-level singleton; each service instance carries its
own rules, statistics and observability state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Sequence, Union

from .config import Settings
from .database import initialize_database
from .interfaces import ContentStore, ReputationProvider
from .moderation.appeals import AppealService
from .moderation.config_schema import FlaggingRulesConfiguration, default_rules
from .moderation.flagging import FlaggingEngine
from .moderation.models import (
    Appeal,
    AppealDecision,
    ContentApprovalResult,
    ContentProcessingResult,
    ContentSubmission,
    FlaggingStatistics,
    ModerationActionType,
    ModerationQueueItem,
    PenaltyType,
    QueueFilter,
    QueueStatistics,
    ReportReason,
    SystemModerationStats,
    TimeRange,
    UserPenalty,
)
from .moderation.penalties import PenaltyLedger, PenaltyPolicy
from .moderation.queue import ReviewQueue
from .moderation.workflow import ModeratorWorkflow
from .observability import ObservabilityManager
from .services.appeal_store import AppealStore
from .services.audit_store import ModerationAuditStore
from .services.flagging_stats_store import FlaggingStatsStore
from .services.idempotency_store import ModerationIdempotencyStore
from .services.moderator_store import ModeratorStore
from .services.penalty_store import PenaltyStore
from .services.queue_store import QueueStore
from .services.rules_config_store import RulesConfigStore
from .utils import utcnow

log = logging.getLogger("warden.service")


@dataclass
class Stores:
    audit: ModerationAuditStore
    queue: QueueStore
    penalties: PenaltyStore
    appeals: AppealStore
    moderators: ModeratorStore
    stats: FlaggingStatsStore
    rules: RulesConfigStore
    idempotency: ModerationIdempotencyStore

    def all(self) -> list:
        return [
            self.audit,
            self.queue,
            self.penalties,
            self.appeals,
            self.moderators,
            self.stats,
            self.rules,
            self.idempotency,
        ]


class ModerationService:
    """Transport-agnostic entry point to the moderation pipeline."""

    def __init__(
        self,
        *,
        stores: Stores,
        engine: FlaggingEngine,
        queue: ReviewQueue,
        workflow: ModeratorWorkflow,
        ledger: PenaltyLedger,
        appeals: AppealService,
        observability: ObservabilityManager,
    ) -> None:
        self.stores = stores
        self.engine = engine
        self.queue = queue
        self.workflow = workflow
        self.ledger = ledger
        self.appeals = appeals
        self.observability = observability

    # Content intake

    async def classify_and_flag(self, submission: ContentSubmission) -> ContentProcessingResult:
        return await self.engine.process_and_flag(submission)

    async def process_batch(
        self,
        items: Sequence[ContentSubmission],
        cancel: Optional[asyncio.Event] = None,
    ) -> list[Optional[ContentProcessingResult]]:
        return await self.engine.process_batch(items, cancel=cancel)

    async def report_content(
        self,
        content_id: str,
        reason: Union[ReportReason, str],
        reporter_id: Optional[str] = None,
    ) -> Optional[ModerationQueueItem]:
        return await self.engine.report_content(content_id, reason, reporter_id=reporter_id)

    # Queue

    def list_queue(self, flt: Optional[QueueFilter] = None) -> list[ModerationQueueItem]:
        return self.queue.list_items(flt)

    def queue_statistics(self) -> QueueStatistics:
        return self.queue.statistics()

    async def dequeue_next(self, moderator_id: str, flt: Optional[QueueFilter] = None) -> Optional[ModerationQueueItem]:
        return await self.workflow.claim_next_item(moderator_id, flt)

    # Moderators

    async def assign_moderator(self, content_id: str, moderator_id: str) -> bool:
        return await self.workflow.assign_moderator(content_id, moderator_id)

    async def decide(
        self,
        content_id: str,
        moderator_id: str,
        action: Union[ModerationActionType, str],
        reason: str,
        notes: Optional[str] = None,
    ) -> ContentApprovalResult:
        return await self.workflow.process_content_approval(content_id, moderator_id, action, reason, notes)

    process_content_approval = decide

    async def get_system_moderation_stats(self, time_range: Union[TimeRange, str] = TimeRange.WEEK) -> SystemModerationStats:
        return await self.workflow.get_system_moderation_stats(time_range)

    # Appeals and penalties

    async def submit_appeal(
        self,
        user_id: str,
        content_id: str,
        moderation_action_id: str,
        reason: str,
        evidence: Optional[str] = None,
    ) -> Appeal:
        return await self.appeals.submit_appeal(user_id, content_id, moderation_action_id, reason, evidence)

    async def review_appeal(
        self,
        appeal_id: str,
        moderator_id: str,
        decision: Union[AppealDecision, str],
        reason: str,
    ) -> bool:
        return await self.appeals.review_appeal(appeal_id, moderator_id, decision, reason)

    async def apply_penalty(
        self,
        user_id: str,
        penalty: PenaltyType,
        reason: str,
        moderator_id: str,
        content_id: Optional[str] = None,
    ) -> UserPenalty:
        return await self.ledger.apply_user_penalty(user_id, penalty, reason, moderator_id, content_id)

    async def remove_penalty(self, penalty_id: str, reason: str, removed_by: Optional[str] = None) -> bool:
        return await self.ledger.remove_penalty(penalty_id, reason, removed_by=removed_by)

    async def get_active_penalties(self, user_id: str) -> list[UserPenalty]:
        return await self.ledger.get_active_penalties(user_id)

    # Rules and statistics

    def get_flagging_rules(self) -> FlaggingRulesConfiguration:
        return self.engine.get_flagging_rules()

    async def update_flagging_rules(
        self,
        rules: Union[FlaggingRulesConfiguration, dict[str, Any]],
        updated_by: Optional[str] = None,
    ) -> int:
        return await self.engine.update_flagging_rules(rules, updated_by=updated_by)

    async def rollback_flagging_rules(self, revision: int, updated_by: Optional[str] = None) -> FlaggingRulesConfiguration:
        return await self.engine.rollback_flagging_rules(revision, updated_by=updated_by)

    def get_statistics(self) -> FlaggingStatistics:
        return self.engine.get_statistics()

    def health(self) -> dict[str, Any]:
        summary = self.observability.get_health_summary()
        summary["queue"] = {"open_items": len(self.queue), "rules_revision": self.engine.rules_revision}
        return summary


async def create_service(
    settings: Settings,
    *,
    content_store: ContentStore,
    reputation: ReputationProvider,
    clock: Optional[Callable[[], datetime]] = None,
    observability: Optional[ObservabilityManager] = None,
    retry_base_delay: float = 0.5,
) -> ModerationService:
    """Build, initialize and load a `ModerationService`."""

    clock = clock or utcnow
    obs = observability or ObservabilityManager(clock=clock)
    path = settings.sqlite_path
    attempts = settings.write_retry_attempts

    stores = Stores(
        audit=ModerationAuditStore(path, write_attempts=attempts),
        queue=QueueStore(path, write_attempts=attempts),
        penalties=PenaltyStore(path, write_attempts=attempts),
        appeals=AppealStore(path, write_attempts=attempts),
        moderators=ModeratorStore(path, write_attempts=attempts, cache_ttl_seconds=settings.moderator_cache_ttl_seconds),
        stats=FlaggingStatsStore(path, write_attempts=attempts),
        rules=RulesConfigStore(path, write_attempts=attempts),
        idempotency=ModerationIdempotencyStore(path, write_attempts=attempts),
    )
    await initialize_database(path, stores.all())

    # The queue reads the threshold from the engine, which is built right after it.
    queue = ReviewQueue(
        stores.queue,
        reports_threshold=lambda: engine.get_flagging_rules().multiple_reports_threshold,
        clock=clock,
        observability=obs,
    )
    engine = FlaggingEngine(
        queue=queue,
        audit=stores.audit,
        stats_store=stores.stats,
        rules_store=stores.rules,
        content_store=content_store,
        reputation=reputation,
        seed_rules=default_rules(
            auto_reject_threshold=settings.auto_reject_threshold,
            auto_flag_threshold=settings.auto_flag_threshold,
            multiple_reports_threshold=settings.multiple_reports_threshold,
        ),
        audit_auto_rejections=settings.audit_auto_rejections,
        batch_concurrency=settings.batch_concurrency,
        visibility_attempts=settings.collaborator_retry_attempts,
        retry_base_delay=retry_base_delay,
        clock=clock,
        observability=obs,
    )

    ledger = PenaltyLedger(stores.penalties, reputation, stores.audit, clock=clock, observability=obs)
    policy = PenaltyPolicy(engine.get_flagging_rules)
    workflow = ModeratorWorkflow(
        queue=queue,
        ledger=ledger,
        policy=policy,
        moderators=stores.moderators,
        audit=stores.audit,
        appeals=stores.appeals,
        idempotency=stores.idempotency,
        content_store=content_store,
        reputation=reputation,
        ban_days=settings.default_ban_days,
        visibility_attempts=settings.collaborator_retry_attempts,
        retry_base_delay=retry_base_delay,
        clock=clock,
        observability=obs,
    )
    appeals = AppealService(stores.appeals, clock=clock, observability=obs)

    await engine.load()
    open_items = await queue.load()
    obs.log_startup_event(
        "moderation_service",
        "OK",
        {"sqlite_path": path, "rules_revision": engine.rules_revision, "open_items": open_items},
    )
    return ModerationService(
        stores=stores,
        engine=engine,
        queue=queue,
        workflow=workflow,
        ledger=ledger,
        appeals=appeals,
        observability=obs,
    )
