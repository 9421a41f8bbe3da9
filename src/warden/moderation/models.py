from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from ..utils import from_iso, to_iso, utcnow


class ContentType(str, Enum):
    POST = "post"
    REVIEW = "review"
    COMMENT = "comment"
    IMAGE = "image"


class ModerationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FLAGGED = "flagged"
    UNDER_REVIEW = "under_review"
    APPEALED = "appealed"


# Statuses under which an item is kept in the review queue.
OPEN_STATUSES = frozenset({ModerationStatus.PENDING, ModerationStatus.FLAGGED, ModerationStatus.UNDER_REVIEW})


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def auto_action_threshold(self) -> float:
        return _SEVERITY_AUTO_ACTION[self]

    @classmethod
    def highest(cls, values) -> "Severity":
        best = cls.LOW
        for v in values:
            if v.rank > best.rank:
                best = v
        return best


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}
_SEVERITY_AUTO_ACTION = {Severity.LOW: 0.9, Severity.MEDIUM: 0.8, Severity.HIGH: 0.7, Severity.CRITICAL: 0.6}


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)

    def escalated(self) -> "Priority":
        idx = min(self.rank + 1, len(_PRIORITY_ORDER) - 1)
        return _PRIORITY_ORDER[idx]


_PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL]


class ModerationFlag(str, Enum):
    PERSONAL_INFORMATION = "personal_information"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    SPAM = "spam"
    HARASSMENT = "harassment"
    VIOLENT_CONTENT = "violent_content"
    HATE_SPEECH = "hate_speech"
    SEXUAL_CONTENT = "sexual_content"
    MISINFORMATION = "misinformation"
    COPYRIGHT_VIOLATION = "copyright_violation"
    OTHER = "other"


class PIIType(str, Enum):
    NAME = "name"
    PHONE_NUMBER = "phone_number"
    EMAIL = "email"
    SOCIAL_MEDIA = "social_media"
    ADDRESS = "address"
    CREDIT_CARD = "credit_card"
    SSN = "ssn"
    OTHER = "other"


class ReportReason(str, Enum):
    SPAM = "spam"
    HARASSMENT = "harassment"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    MISINFORMATION = "misinformation"
    VIOLENCE = "violence"
    HATE_SPEECH = "hate_speech"
    OTHER = "other"


@dataclass(frozen=True)
class PIIDetection:
    type: PIIType
    # Character span inside the scanned text ("text" or "image:<n>" OCR text).
    location: tuple[int, int]
    confidence: float
    text: Optional[str] = None
    source: str = "text"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "location": list(self.location),
            "confidence": self.confidence,
            "text": self.text,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "PIIDetection":
        start, end = raw.get("location") or (0, 0)
        return cls(
            type=PIIType(raw["type"]),
            location=(int(start), int(end)),
            confidence=float(raw.get("confidence", 0.0)),
            text=raw.get("text"),
            source=str(raw.get("source") or "text"),
        )


@dataclass(frozen=True)
class ImageDescriptor:
    """Signals extracted from one image before it reaches the pipeline."""

    url: str
    width: int
    height: int
    ocr_text: Optional[str] = None
    # Upstream classifier scores in [0, 1], e.g. {"nsfw": 0.93, "violence": 0.1}.
    signals: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ContentSubmission:
    content_id: str
    content_type: ContentType
    author_id: str
    text: Optional[str] = None
    images: tuple[ImageDescriptor, ...] = ()


@dataclass(frozen=True)
class ModerationResult:
    """Immutable analysis snapshot; review outcomes live on the queue item."""

    content_id: str
    content_type: ContentType
    status: ModerationStatus
    flags: frozenset[ModerationFlag]
    confidence: float
    severity: Severity
    reason: str
    detected_pii: tuple[PIIDetection, ...]
    created_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def requires_human_review(self) -> bool:
        if not self.flags:
            return False
        from .catalog import flag_info

        if any(flag_info(f).severity.rank >= Severity.HIGH.rank for f in self.flags):
            return True
        return self.confidence < self.severity.auto_action_threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "content_id": self.content_id,
            "content_type": self.content_type.value,
            "status": self.status.value,
            "flags": sorted(f.value for f in self.flags),
            "confidence": self.confidence,
            "severity": self.severity.value,
            "reason": self.reason,
            "detected_pii": [p.to_dict() for p in self.detected_pii],
            "created_at": to_iso(self.created_at),
            "reviewed_at": to_iso(self.reviewed_at),
            "reviewed_by": self.reviewed_by,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ModerationResult":
        return cls(
            content_id=str(raw["content_id"]),
            content_type=ContentType(raw["content_type"]),
            status=ModerationStatus(raw["status"]),
            flags=frozenset(ModerationFlag(f) for f in raw.get("flags") or []),
            confidence=float(raw.get("confidence", 0.0)),
            severity=Severity(raw.get("severity") or "low"),
            reason=str(raw.get("reason") or ""),
            detected_pii=tuple(PIIDetection.from_dict(p) for p in raw.get("detected_pii") or []),
            created_at=from_iso(raw.get("created_at")) or utcnow(),
            reviewed_at=from_iso(raw.get("reviewed_at")),
            reviewed_by=raw.get("reviewed_by"),
            notes=raw.get("notes"),
        )


class AutomaticActionKind(str, Enum):
    AUTO_APPROVE = "auto_approve"
    AUTO_FLAG = "auto_flag"
    AUTO_REJECT = "auto_reject"


@dataclass(frozen=True)
class AutomaticAction:
    kind: AutomaticActionKind
    reason: Optional[str] = None

    @classmethod
    def approve(cls) -> "AutomaticAction":
        return cls(AutomaticActionKind.AUTO_APPROVE)

    @classmethod
    def flag(cls, reason: str) -> "AutomaticAction":
        return cls(AutomaticActionKind.AUTO_FLAG, reason)

    @classmethod
    def reject(cls, reason: str) -> "AutomaticAction":
        return cls(AutomaticActionKind.AUTO_REJECT, reason)


@dataclass(frozen=True)
class AuthorContext:
    user_id: str
    is_new_user: bool = False
    reputation: Optional[int] = None


@dataclass(frozen=True)
class ContentProcessingResult:
    content_id: str
    moderation_result: ModerationResult
    automatic_action: AutomaticAction
    requires_human_review: bool
    queue_item_id: Optional[str] = None


@dataclass
class FlaggingStatistics:
    total_processed: int = 0
    auto_approved: int = 0
    auto_flagged: int = 0
    auto_rejected: int = 0
    sent_to_human_review: int = 0
    pii_detected: int = 0

    @property
    def auto_approval_rate(self) -> float:
        if self.total_processed <= 0:
            return 0.0
        return self.auto_approved / self.total_processed

    @property
    def human_review_rate(self) -> float:
        if self.total_processed <= 0:
            return 0.0
        return self.sent_to_human_review / self.total_processed

    def snapshot(self) -> "FlaggingStatistics":
        return FlaggingStatistics(
            total_processed=self.total_processed,
            auto_approved=self.auto_approved,
            auto_flagged=self.auto_flagged,
            auto_rejected=self.auto_rejected,
            sent_to_human_review=self.sent_to_human_review,
            pii_detected=self.pii_detected,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "auto_approved": self.auto_approved,
            "auto_flagged": self.auto_flagged,
            "auto_rejected": self.auto_rejected,
            "sent_to_human_review": self.sent_to_human_review,
            "pii_detected": self.pii_detected,
            "auto_approval_rate": self.auto_approval_rate,
            "human_review_rate": self.human_review_rate,
        }


@dataclass
class ModerationQueueItem:
    """A unit of pending human work.

    `content` and `image_urls` are snapshots taken at enqueue time.
    """

    id: str
    content_id: str
    content_type: ContentType
    author_id: str
    content: Optional[str]
    image_urls: tuple[str, ...]
    moderation_result: ModerationResult
    report_count: int
    priority: Priority
    status: ModerationStatus
    created_at: datetime
    updated_at: datetime
    assigned_to: Optional[str] = None
    escalated: bool = False

    @property
    def is_high_priority(self) -> bool:
        return (
            self.priority in (Priority.HIGH, Priority.CRITICAL)
            or self.moderation_result.severity in (Severity.HIGH, Severity.CRITICAL)
        )

    @property
    def sort_key(self) -> tuple[int, datetime, str]:
        return (-self.priority.rank, self.created_at, self.id)


@dataclass(frozen=True)
class QueueFilter:
    status: Optional[ModerationStatus] = None
    content_type: Optional[ContentType] = None
    priority: Optional[Priority] = None
    search: Optional[str] = None
    limit: int = 50

    def matches(self, item: ModerationQueueItem) -> bool:
        if self.status is not None and item.status != self.status:
            return False
        if self.content_type is not None and item.content_type != self.content_type:
            return False
        if self.priority is not None and item.priority != self.priority:
            return False
        if self.search:
            needle = self.search.casefold()
            haystacks = (item.content or "", item.moderation_result.reason or "")
            if not any(needle in h.casefold() for h in haystacks):
                return False
        return True


@dataclass(frozen=True)
class QueueStatistics:
    total_items: int
    high_priority_items: int
    pending_items: int
    flagged_items: int
    under_review_items: int
    average_wait_time_minutes: int


class ModerationActionType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    FLAG = "flag"
    EDIT = "edit"
    WARN = "warn"
    BAN = "ban"
    DELETE = "delete"

    @property
    def resolves(self) -> bool:
        return self in (
            ModerationActionType.APPROVE,
            ModerationActionType.REJECT,
            ModerationActionType.BAN,
            ModerationActionType.DELETE,
        )


@dataclass(frozen=True)
class ModerationAction:
    """One moderator decision in the audit trail."""

    id: str
    content_id: str
    moderator_id: str
    action: ModerationActionType
    reason: str
    notes: Optional[str]
    created_at: datetime
    queue_item_id: Optional[str] = None


class ModeratorRole(str, Enum):
    STANDARD = "standard"
    SENIOR = "senior"
    ADMIN = "admin"


@dataclass(frozen=True)
class Moderator:
    id: str
    username: str
    role: ModeratorRole
    is_active: bool
    joined_at: datetime


@dataclass(frozen=True)
class ModeratorWorkload:
    moderator_id: str
    assigned_items: int
    completed_today: int
    # Seconds between assignment and decision.
    average_time_per_item: int


class PenaltyKind(str, Enum):
    WARNING = "warning"
    TEMPORARY_BAN = "temporary_ban"
    PERMANENT_BAN = "permanent_ban"


@dataclass(frozen=True)
class PenaltyType:
    kind: PenaltyKind
    days: Optional[int] = None

    @classmethod
    def warning(cls) -> "PenaltyType":
        return cls(PenaltyKind.WARNING)

    @classmethod
    def temporary_ban(cls, days: int) -> "PenaltyType":
        return cls(PenaltyKind.TEMPORARY_BAN, int(days))

    @classmethod
    def permanent_ban(cls) -> "PenaltyType":
        return cls(PenaltyKind.PERMANENT_BAN)

    def expires_at(self, applied_at: datetime) -> Optional[datetime]:
        if self.kind is PenaltyKind.TEMPORARY_BAN:
            return applied_at + timedelta(days=int(self.days or 0))
        return None

    def __str__(self) -> str:
        if self.kind is PenaltyKind.TEMPORARY_BAN:
            return f"{self.kind.value}({self.days}d)"
        return self.kind.value


@dataclass(frozen=True)
class UserPenalty:
    id: str
    user_id: str
    moderator_id: str
    content_id: Optional[str]
    penalty_type: PenaltyType
    reason: str
    applied_at: datetime
    expires_at: Optional[datetime]
    moderation_action_id: Optional[str] = None
    removed_at: Optional[datetime] = None
    removed_reason: Optional[str] = None
    removed_by: Optional[str] = None

    @property
    def is_removed(self) -> bool:
        return self.removed_at is not None

    def is_active_at(self, now: datetime) -> bool:
        if self.removed_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now

    @property
    def is_active(self) -> bool:
        return self.is_active_at(utcnow())


class AppealStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AppealDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Appeal:
    id: str
    user_id: str
    content_id: str
    moderation_action_id: str
    reason: str
    evidence: Optional[str]
    status: AppealStatus
    submitted_at: datetime
    decision: Optional[AppealDecision] = None
    decision_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ContentApprovalResult:
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    action_id: Optional[str] = None
    penalty: Optional[UserPenalty] = None
    already_resolved: bool = False


class TimeRange(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"
    ALL = "all"

    def start(self, now: datetime) -> Optional[datetime]:
        days = _TIME_RANGE_DAYS.get(self)
        if days is None:
            return None
        return now - timedelta(days=days)


_TIME_RANGE_DAYS = {
    TimeRange.DAY: 1,
    TimeRange.WEEK: 7,
    TimeRange.MONTH: 30,
    TimeRange.QUARTER: 91,
    TimeRange.YEAR: 365,
}


@dataclass(frozen=True)
class ModerationMetrics:
    moderator_id: str
    time_range: TimeRange
    total_reviewed: int
    approved: int
    rejected: int
    average_time_per_review: int
    accuracy_score: float
    appeals_overturned: int


@dataclass(frozen=True)
class SystemModerationStats:
    time_range: TimeRange
    total_content_processed: int
    auto_approved: int
    auto_flagged: int
    auto_rejected: int
    human_reviewed: int
    # Seconds from enqueue to resolution.
    average_queue_time: int
    ai_accuracy: float
    false_positive_rate: float
