from __future__ import annotations

import os
from dataclasses import dataclass


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    sqlite_path: str = "warden.sqlite3"
    log_level: str = "INFO"
    log_json: bool = False
    batch_concurrency: int = 5
    # Auto-rejected content is still queued so a human can confirm it.
    audit_auto_rejections: bool = True
    write_retry_attempts: int = 3
    collaborator_retry_attempts: int = 3
    # 0 means the ban action issues a permanent ban.
    default_ban_days: int = 0
    moderator_cache_ttl_seconds: int = 30
    # Seed values for the first published flagging rules revision.
    auto_reject_threshold: float = 0.9
    auto_flag_threshold: float = 0.7
    multiple_reports_threshold: int = 3


def load_settings() -> Settings:
    return Settings(
        sqlite_path=(os.getenv("WARDEN_SQLITE_PATH", "warden.sqlite3").strip() or "warden.sqlite3"),
        log_level=(os.getenv("WARDEN_LOG_LEVEL", "INFO").strip() or "INFO"),
        log_json=_get_bool("WARDEN_LOG_JSON", False),
        batch_concurrency=max(1, _get_int("WARDEN_BATCH_CONCURRENCY", 5)),
        audit_auto_rejections=_get_bool("WARDEN_AUDIT_AUTO_REJECTIONS", True),
        write_retry_attempts=max(1, _get_int("WARDEN_WRITE_RETRY_ATTEMPTS", 3)),
        collaborator_retry_attempts=max(1, _get_int("WARDEN_COLLABORATOR_RETRY_ATTEMPTS", 3)),
        default_ban_days=max(0, _get_int("WARDEN_DEFAULT_BAN_DAYS", 0)),
        moderator_cache_ttl_seconds=max(0, _get_int("WARDEN_MODERATOR_CACHE_TTL_SECONDS", 30)),
        auto_reject_threshold=_get_float("WARDEN_AUTO_REJECT_THRESHOLD", 0.9),
        auto_flag_threshold=_get_float("WARDEN_AUTO_FLAG_THRESHOLD", 0.7),
        multiple_reports_threshold=_get_int("WARDEN_MULTIPLE_REPORTS_THRESHOLD", 3),
    )
