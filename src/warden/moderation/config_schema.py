from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from ..errors import RulesValidationError


RULES_DOC_VERSION = 1

_THRESHOLD_KEYS = ("auto_reject_threshold", "auto_flag_threshold")
_BOOL_KEYS = (
    "pii_auto_reject",
    "harassment_auto_reject",
    "hate_speech_auto_reject",
    "spam_auto_flag",
    "new_user_stricter_rules",
)


@dataclass(frozen=True)
class FlaggingRulesConfiguration:
    """Thresholds and gates used by the automatic decision step.

    Instances are immutable; an update publishes a whole new instance.
    """

    auto_reject_threshold: float = 0.9
    auto_flag_threshold: float = 0.7
    pii_auto_reject: bool = True
    harassment_auto_reject: bool = True
    hate_speech_auto_reject: bool = True
    spam_auto_flag: bool = True
    multiple_reports_threshold: int = 3
    new_user_stricter_rules: bool = True

    def __post_init__(self) -> None:
        for key in _THRESHOLD_KEYS:
            value = getattr(self, key)
            if not 0.0 <= float(value) <= 1.0:
                raise ValueError(f"{key} must be within [0, 1], got {value!r}")
        if self.auto_flag_threshold >= self.auto_reject_threshold:
            raise ValueError("auto_flag_threshold must be lower than auto_reject_threshold")
        if int(self.multiple_reports_threshold) < 1:
            raise ValueError("multiple_reports_threshold must be at least 1")

    def to_doc(self) -> dict[str, Any]:
        doc = asdict(self)
        doc["version"] = RULES_DOC_VERSION
        return doc

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "FlaggingRulesConfiguration":
        issues = validate_rules(doc)
        if issues:
            raise RulesValidationError(issues)
        return cls(
            auto_reject_threshold=float(doc["auto_reject_threshold"]),
            auto_flag_threshold=float(doc["auto_flag_threshold"]),
            pii_auto_reject=doc["pii_auto_reject"],
            harassment_auto_reject=doc["harassment_auto_reject"],
            hate_speech_auto_reject=doc["hate_speech_auto_reject"],
            spam_auto_flag=doc["spam_auto_flag"],
            multiple_reports_threshold=int(doc["multiple_reports_threshold"]),
            new_user_stricter_rules=doc["new_user_stricter_rules"],
        )


def default_rules(
    *,
    auto_reject_threshold: float = 0.9,
    auto_flag_threshold: float = 0.7,
    multiple_reports_threshold: int = 3,
) -> FlaggingRulesConfiguration:
    """Rules used for the first published revision."""

    return FlaggingRulesConfiguration(
        auto_reject_threshold=auto_reject_threshold,
        auto_flag_threshold=auto_flag_threshold,
        multiple_reports_threshold=multiple_reports_threshold,
    )


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_rules(doc: dict[str, Any]) -> list[ValidationIssue]:
    """Validate a rules document. Returns list of issues; empty means valid."""

    if not isinstance(doc, dict):
        return [ValidationIssue(path="$", message="Rules must be an object")]

    issues: list[ValidationIssue] = []
    if doc.get("version", RULES_DOC_VERSION) != RULES_DOC_VERSION:
        issues.append(ValidationIssue(path="$.version", message=f"Unsupported version (expected {RULES_DOC_VERSION})"))

    for key in _THRESHOLD_KEYS:
        value = doc.get(key)
        if not _is_number(value):
            issues.append(ValidationIssue(path=f"$.{key}", message="must be a number"))
        elif not 0.0 <= float(value) <= 1.0:
            issues.append(ValidationIssue(path=f"$.{key}", message="must be within [0, 1]"))

    flag_t, reject_t = doc.get("auto_flag_threshold"), doc.get("auto_reject_threshold")
    if _is_number(flag_t) and _is_number(reject_t) and float(flag_t) >= float(reject_t):
        issues.append(
            ValidationIssue(path="$.auto_flag_threshold", message="must be lower than auto_reject_threshold")
        )

    for key in _BOOL_KEYS:
        if not isinstance(doc.get(key), bool):
            issues.append(ValidationIssue(path=f"$.{key}", message="must be boolean"))

    mrt = doc.get("multiple_reports_threshold")
    if not isinstance(mrt, int) or isinstance(mrt, bool):
        issues.append(ValidationIssue(path="$.multiple_reports_threshold", message="must be integer"))
    elif mrt < 1:
        issues.append(ValidationIssue(path="$.multiple_reports_threshold", message="must be at least 1"))

    known = set(_THRESHOLD_KEYS) | set(_BOOL_KEYS) | {"multiple_reports_threshold", "version"}
    for key in sorted(set(doc) - known):
        issues.append(ValidationIssue(path=f"$.{key}", message="unknown key"))

    return issues
