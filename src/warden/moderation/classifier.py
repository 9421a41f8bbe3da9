"""Deterministic content classifier.

Turns a submission's text and image descriptors into a `ModerationResult`
using static lexicons, PII patterns and image heuristics. The function is
pure apart from reading the clock and never raises.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from ..utils import utcnow
from .catalog import severity_of
from .models import (
    ContentSubmission,
    ImageDescriptor,
    ModerationFlag,
    ModerationResult,
    ModerationStatus,
    PIIDetection,
    PIIType,
    Severity,
)

log = logging.getLogger("warden.classifier")

# Text beyond this many characters is not scanned.
MAX_SCAN_CHARS = 20_000

MIN_IMAGE_DIMENSION = 100
IMAGE_SIGNAL_THRESHOLD = 0.8
SMALL_IMAGE_SPAM_CONFIDENCE = 0.7


@dataclass(frozen=True)
class _LexiconRule:
    flag: ModerationFlag
    pattern: re.Pattern[str]
    confidence: float
    critical: bool = False


def _lexicon(*phrases: str) -> re.Pattern[str]:
    # Phrases become a single alternation with word boundaries. No nested
    # quantifiers, so matching stays linear in the input length.
    parts = [r"\s+".join(re.escape(w) for w in p.split()) for p in phrases]
    return re.compile(r"\b(?:" + "|".join(parts) + r")\b", re.I)


LEXICON: tuple[_LexiconRule, ...] = (
    _LexiconRule(
        ModerationFlag.HARASSMENT,
        _lexicon("kill yourself", "kys", "go die", "you should die", "end your life"),
        0.95,
        critical=True,
    ),
    _LexiconRule(
        ModerationFlag.HARASSMENT,
        _lexicon("hate you", "worthless", "pathetic loser", "nobody likes you", "you are disgusting", "shut up idiot"),
        0.85,
    ),
    _LexiconRule(
        ModerationFlag.HATE_SPEECH,
        _lexicon("nazi", "subhuman", "vermin", "go back to your country", "terrorist"),
        0.9,
    ),
    _LexiconRule(
        ModerationFlag.VIOLENT_CONTENT,
        _lexicon("i will kill you", "i am going to kill you", "i'll hurt you", "shoot up", "bomb threat"),
        0.95,
        critical=True,
    ),
    _LexiconRule(
        ModerationFlag.VIOLENT_CONTENT,
        _lexicon("stab", "beat you up", "murder", "bloodbath"),
        0.8,
    ),
    _LexiconRule(
        ModerationFlag.INAPPROPRIATE_CONTENT,
        _lexicon("fuck", "fucking", "shit", "bitch", "asshole", "damn", "bastard"),
        0.75,
    ),
    _LexiconRule(
        ModerationFlag.SEXUAL_CONTENT,
        _lexicon("send nudes", "nudes", "porn", "xxx", "onlyfans", "hookup tonight"),
        0.75,
    ),
    _LexiconRule(
        ModerationFlag.MISINFORMATION,
        _lexicon("miracle cure", "vaccines cause autism", "doctors don't want you to know", "guaranteed cure"),
        0.6,
    ),
    _LexiconRule(
        ModerationFlag.COPYRIGHT_VIOLATION,
        _lexicon("full movie download", "torrent link", "pirated copy", "cracked version", "free download crack"),
        0.6,
    ),
)


SPAM_PHRASES = _lexicon(
    "click here",
    "buy now",
    "limited time",
    "act now",
    "order now",
    "offer",
    "free money",
    "make money fast",
    "100% free",
    "risk free",
    "winner",
    "work from home",
)
LINK_RE = re.compile(r"\bhttps?://\S{1,2048}|\bwww\.\S{1,2048}", re.I)
EXCLAIM_RE = re.compile(r"!{3,}")
SPAM_BASE_CONFIDENCE = 0.6
SPAM_MAX_CONFIDENCE = 0.85


@dataclass(frozen=True)
class _PIIPattern:
    type: PIIType
    pattern: re.Pattern[str]
    confidence: float


# Listed in precedence order: a later pattern never claims a span that an
# earlier one already matched (an SSN is not also a phone number).
PII_PATTERNS: tuple[_PIIPattern, ...] = (
    _PIIPattern(PIIType.SSN, re.compile(r"(?<!\d)\d{3}-\d{2}-\d{4}(?!\d)"), 0.95),
    _PIIPattern(PIIType.CREDIT_CARD, re.compile(r"(?<!\d)(?:\d[ -]?){12,18}\d(?!\d)"), 0.9),
    _PIIPattern(
        PIIType.EMAIL,
        re.compile(r"\b[A-Za-z0-9._%+-]{1,64}@[A-Za-z0-9.-]{1,253}\.[A-Za-z]{2,24}\b"),
        0.95,
    ),
    _PIIPattern(
        PIIType.PHONE_NUMBER,
        re.compile(r"(?<![\d-])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?![\d-])"),
        0.9,
    ),
    _PIIPattern(
        PIIType.ADDRESS,
        re.compile(
            r"\b\d{1,5}\s+(?:[A-Za-z0-9.]{1,30}\s+){1,4}"
            r"(?:street|st|avenue|ave|road|rd|boulevard|blvd|lane|ln|drive|dr|court|ct|way)\b",
            re.I,
        ),
        0.75,
    ),
    _PIIPattern(PIIType.SOCIAL_MEDIA, re.compile(r"(?<![\w.@])@[A-Za-z0-9_]{2,30}\b"), 0.8),
)


def _luhn_ok(digits: str) -> bool:
    total = 0
    for i, ch in enumerate(reversed(digits)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def detect_pii(text: str, *, source: str = "text") -> list[PIIDetection]:
    """Find PII in `text`, ordered by position."""

    text = text[:MAX_SCAN_CHARS]
    taken: list[tuple[int, int]] = []
    found: list[PIIDetection] = []
    for rule in PII_PATTERNS:
        for m in rule.pattern.finditer(text):
            start, end = m.span()
            if any(start < e and s < end for s, e in taken):
                continue
            if rule.type is PIIType.CREDIT_CARD:
                digits = re.sub(r"\D", "", m.group())
                if not 13 <= len(digits) <= 19 or not _luhn_ok(digits):
                    continue
            taken.append((start, end))
            found.append(
                PIIDetection(
                    type=rule.type,
                    location=(start, end),
                    confidence=rule.confidence,
                    text=m.group(),
                    source=source,
                )
            )
    found.sort(key=lambda p: p.location[0])
    return found


def _caps_ratio(text: str) -> tuple[float, int]:
    letters = [c for c in text if c.isalpha()]
    if not letters:
        return 0.0, 0
    upper = sum(1 for c in letters if c.isupper())
    return upper / len(letters), len(letters)


def _spam_signals(text: str) -> list[str]:
    signals = sorted({m.group().lower() for m in SPAM_PHRASES.finditer(text)})
    ratio, letters = _caps_ratio(text)
    if letters >= 10 and ratio > 0.5:
        signals.append("excessive capitals")
    if EXCLAIM_RE.search(text):
        signals.append("repeated exclamation marks")
    if len(LINK_RE.findall(text)) >= 3:
        signals.append("many links")
    return signals


def _scan_text(text: str, scores: dict[ModerationFlag, float]) -> bool:
    """Apply the lexicons and spam heuristics; returns True if a critical rule fired."""

    critical = False
    for rule in LEXICON:
        if rule.pattern.search(text):
            scores[rule.flag] = max(scores.get(rule.flag, 0.0), rule.confidence)
            critical = critical or rule.critical

    signals = _spam_signals(text)
    if len(signals) >= 2:
        conf = min(SPAM_MAX_CONFIDENCE, SPAM_BASE_CONFIDENCE + 0.05 * (len(signals) - 1))
        scores[ModerationFlag.SPAM] = max(scores.get(ModerationFlag.SPAM, 0.0), conf)
    return critical


_IMAGE_SIGNAL_FLAGS = {
    "nsfw": ModerationFlag.SEXUAL_CONTENT,
    "violence": ModerationFlag.VIOLENT_CONTENT,
    "hate_symbols": ModerationFlag.HATE_SPEECH,
}


def _scan_image(
    idx: int,
    image: ImageDescriptor,
    scores: dict[ModerationFlag, float],
    pii: list[PIIDetection],
) -> bool:
    if image.width < MIN_IMAGE_DIMENSION or image.height < MIN_IMAGE_DIMENSION:
        scores[ModerationFlag.SPAM] = max(scores.get(ModerationFlag.SPAM, 0.0), SMALL_IMAGE_SPAM_CONFIDENCE)

    for name, flag in _IMAGE_SIGNAL_FLAGS.items():
        value = float(image.signals.get(name, 0.0) or 0.0)
        if value >= IMAGE_SIGNAL_THRESHOLD:
            scores[flag] = max(scores.get(flag, 0.0), min(value, 1.0))

    critical = False
    if image.ocr_text:
        ocr = image.ocr_text[:MAX_SCAN_CHARS]
        critical = _scan_text(ocr, scores)
        pii.extend(detect_pii(ocr, source=f"image:{idx}"))
    return critical


def _aggregate_confidence(scores: dict[ModerationFlag, float]) -> float:
    if not scores:
        return 0.0
    # Corroborating categories raise confidence slightly.
    conf = max(scores.values()) + 0.05 * (len(scores) - 1)
    return round(min(conf, 0.99), 4)


def suggest_status(
    flags: Iterable[ModerationFlag],
    confidence: float,
    severity: Severity,
    pii_count: int,
) -> ModerationStatus:
    if pii_count > 0:
        return ModerationStatus.FLAGGED
    if not list(flags):
        return ModerationStatus.APPROVED
    if confidence >= severity.auto_action_threshold:
        if severity in (Severity.HIGH, Severity.CRITICAL):
            return ModerationStatus.REJECTED
        if severity is Severity.MEDIUM:
            return ModerationStatus.FLAGGED
        return ModerationStatus.APPROVED
    return ModerationStatus.PENDING


def _describe(flags: frozenset[ModerationFlag], pii: list[PIIDetection]) -> str:
    if not flags:
        return "No issues detected"
    names = sorted(f.value for f in flags)
    reason = "Detected: " + ", ".join(names)
    if pii:
        kinds = sorted({p.type.value for p in pii})
        reason += f" (personal information: {', '.join(kinds)})"
    return reason


def _clean_result(content: ContentSubmission, now: datetime, reason: str) -> ModerationResult:
    return ModerationResult(
        content_id=content.content_id,
        content_type=content.content_type,
        status=ModerationStatus.APPROVED,
        flags=frozenset(),
        confidence=0.0,
        severity=Severity.LOW,
        reason=reason,
        detected_pii=(),
        created_at=now,
    )


def classify(content: ContentSubmission, *, now: Optional[datetime] = None) -> ModerationResult:
    """Classify a submission. Never raises."""

    now = now or utcnow()
    try:
        return _classify(content, now)
    except Exception:
        # Malformed input is treated as "no signal".
        log.exception("Classifier failed for content %s", getattr(content, "content_id", "?"))
        return _clean_result(content, now, "Classification unavailable")


def _classify(content: ContentSubmission, now: datetime) -> ModerationResult:
    text = (content.text or "")[:MAX_SCAN_CHARS]
    images = tuple(content.images or ())
    if not text.strip() and not images:
        return _clean_result(content, now, "No content to analyze")

    scores: dict[ModerationFlag, float] = {}
    pii: list[PIIDetection] = []
    critical = False

    if text.strip():
        critical = _scan_text(text, scores)
        pii.extend(detect_pii(text))

    for idx, image in enumerate(images):
        critical = _scan_image(idx, image, scores, pii) or critical

    if pii:
        scores[ModerationFlag.PERSONAL_INFORMATION] = max(p.confidence for p in pii)

    flags = frozenset(scores)
    confidence = _aggregate_confidence(scores)
    severity = Severity.CRITICAL if critical else severity_of(flags)

    return ModerationResult(
        content_id=content.content_id,
        content_type=content.content_type,
        status=suggest_status(flags, confidence, severity, len(pii)),
        flags=flags,
        confidence=confidence,
        severity=severity,
        reason=_describe(flags, pii),
        detected_pii=tuple(pii),
        created_at=now,
    )
