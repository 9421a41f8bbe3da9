from __future__ import annotations

from dataclasses import dataclass

from .models import ModerationFlag, ReportReason, Severity


@dataclass(frozen=True)
class FlagInfo:
    severity: Severity
    description: str
    # Presentation hints for dashboards; the engine never reads them.
    icon: str
    color: str


# Single source of truth for per-flag severity. Presentation layers read the
# same table instead of re-deriving severity from the flag name.
FLAG_CATALOG: dict[ModerationFlag, FlagInfo] = {
    ModerationFlag.PERSONAL_INFORMATION: FlagInfo(Severity.HIGH, "Personal information exposed", "lock.shield", "red"),
    ModerationFlag.HARASSMENT: FlagInfo(Severity.HIGH, "Harassment or bullying", "exclamationmark.triangle", "red"),
    ModerationFlag.HATE_SPEECH: FlagInfo(Severity.HIGH, "Hate speech", "hand.raised", "red"),
    ModerationFlag.VIOLENT_CONTENT: FlagInfo(Severity.HIGH, "Violent content", "bolt", "red"),
    ModerationFlag.INAPPROPRIATE_CONTENT: FlagInfo(Severity.MEDIUM, "Inappropriate content", "eye.slash", "orange"),
    ModerationFlag.SEXUAL_CONTENT: FlagInfo(Severity.MEDIUM, "Sexual content", "eye.slash", "orange"),
    ModerationFlag.MISINFORMATION: FlagInfo(Severity.MEDIUM, "Misinformation", "questionmark.circle", "orange"),
    ModerationFlag.SPAM: FlagInfo(Severity.LOW, "Spam or promotional content", "envelope.badge", "yellow"),
    ModerationFlag.COPYRIGHT_VIOLATION: FlagInfo(Severity.LOW, "Copyright violation", "c.circle", "yellow"),
    ModerationFlag.OTHER: FlagInfo(Severity.LOW, "Other policy concern", "flag", "gray"),
}


REPORT_REASON_FLAGS: dict[ReportReason, ModerationFlag] = {
    ReportReason.SPAM: ModerationFlag.SPAM,
    ReportReason.HARASSMENT: ModerationFlag.HARASSMENT,
    ReportReason.INAPPROPRIATE_CONTENT: ModerationFlag.INAPPROPRIATE_CONTENT,
    ReportReason.MISINFORMATION: ModerationFlag.MISINFORMATION,
    ReportReason.VIOLENCE: ModerationFlag.VIOLENT_CONTENT,
    ReportReason.HATE_SPEECH: ModerationFlag.HATE_SPEECH,
    ReportReason.OTHER: ModerationFlag.OTHER,
}


def flag_info(flag: ModerationFlag) -> FlagInfo:
    return FLAG_CATALOG[flag]


def severity_of(flags) -> Severity:
    """Aggregate severity: the highest intrinsic severity among `flags`."""
    return Severity.highest(FLAG_CATALOG[f].severity for f in flags)
