from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from .utils import utcnow

log = logging.getLogger("warden.observability")


class LogLevel(Enum):
    """Structured log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ActionType(Enum):
    """Event kinds for structured logging."""
    CLASSIFICATION = "classification"
    AUTO_ACTION = "auto_action"
    QUEUE = "queue"
    DECISION = "decision"
    PENALTY = "penalty"
    APPEAL = "appeal"
    CONFIG = "config"
    ERROR = "error"
    STARTUP = "startup"


@dataclass
class StructuredLogEntry:
    """Structured log entry with context."""
    timestamp: datetime
    level: LogLevel
    action: ActionType
    content_id: str | None
    user_id: str | None
    message: str
    details: dict[str, Any]
    success: bool | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["level"] = self.level.value
        data["action"] = self.action.value
        return data


_LEVEL_METHODS = {
    LogLevel.DEBUG: log.debug,
    LogLevel.INFO: log.info,
    LogLevel.WARNING: log.warning,
    LogLevel.ERROR: log.error,
    LogLevel.CRITICAL: log.critical,
}


class ObservabilityManager:
    """Structured event logging plus per-event counters for health reporting.

    One instance is owned by the service and passed to each component.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._startup_time = clock()
        self._event_counts: dict[str, int] = {}
        self._error_counts: dict[str, int] = {}
        self._health_status: dict[str, bool] = {}

    def log_structured(
        self,
        level: LogLevel,
        action: ActionType,
        message: str,
        content_id: str | None = None,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        success: bool | None = None,
        error_type: str | None = None,
    ) -> None:
        entry = StructuredLogEntry(
            timestamp=self._clock(),
            level=level,
            action=action,
            content_id=content_id,
            user_id=user_id,
            message=message,
            details=details or {},
            success=success,
            error_type=error_type,
        )
        log_method = _LEVEL_METHODS.get(level, log.info)
        log_method(f"[{action.value}] {message} | {json.dumps(entry.to_dict(), separators=(',', ':'), default=str)}")

        self._event_counts[action.value] = self._event_counts.get(action.value, 0) + 1
        if action is ActionType.ERROR:
            key = f"{error_type or 'unknown'}:{message}"
            self._error_counts[key] = self._error_counts.get(key, 0) + 1

    def log_auto_action(self, content_id: str, author_id: str, action: str, reason: str | None, details: dict[str, Any]) -> None:
        self.log_structured(
            level=LogLevel.INFO,
            action=ActionType.AUTO_ACTION,
            message=f"Automatic {action}" + (f": {reason}" if reason else ""),
            content_id=content_id,
            user_id=author_id,
            details=details,
            success=True,
        )

    def log_queue_event(self, operation: str, content_id: str, details: dict[str, Any] | None = None) -> None:
        self.log_structured(
            level=LogLevel.INFO,
            action=ActionType.QUEUE,
            message=f"Queue {operation}",
            content_id=content_id,
            details=details,
        )

    def log_decision(
        self,
        content_id: str,
        moderator_id: str,
        action: str,
        success: bool,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.log_structured(
            level=LogLevel.INFO if success else LogLevel.WARNING,
            action=ActionType.DECISION,
            message=f"Moderator {action} {'applied' if success else 'refused'}" + (f": {error}" if error else ""),
            content_id=content_id,
            user_id=moderator_id,
            details=details,
            success=success,
        )

    def log_penalty(self, operation: str, penalty_id: str, user_id: str, details: dict[str, Any] | None = None) -> None:
        self.log_structured(
            level=LogLevel.INFO,
            action=ActionType.PENALTY,
            message=f"Penalty {operation} {penalty_id}",
            user_id=user_id,
            details=details,
            success=True,
        )

    def log_appeal(self, operation: str, appeal_id: str, user_id: str | None, success: bool, details: dict[str, Any] | None = None) -> None:
        self.log_structured(
            level=LogLevel.INFO if success else LogLevel.WARNING,
            action=ActionType.APPEAL,
            message=f"Appeal {appeal_id} {operation}",
            user_id=user_id,
            details=details,
            success=success,
        )

    def log_config_change(self, revision: int, updated_by: str | None, details: dict[str, Any]) -> None:
        self.log_structured(
            level=LogLevel.INFO,
            action=ActionType.CONFIG,
            message=f"Flagging rules revision {revision} published",
            user_id=updated_by,
            details=details,
            success=True,
        )

    def log_error_with_context(self, error: BaseException, context: dict[str, Any]) -> None:
        self.log_structured(
            level=LogLevel.ERROR,
            action=ActionType.ERROR,
            message=str(error) or type(error).__name__,
            content_id=context.get("content_id"),
            user_id=context.get("user_id"),
            details=context,
            error_type=type(error).__name__,
        )

    def log_startup_event(self, component: str, status: str, details: dict[str, Any] | None = None) -> None:
        self.log_structured(
            level=LogLevel.INFO if status == "OK" else LogLevel.ERROR,
            action=ActionType.STARTUP,
            message=f"Startup component {component}: {status}",
            details=details or {"component": component, "status": status},
            success=status == "OK",
        )
        self._health_status[component] = status == "OK"

    def get_health_summary(self) -> dict[str, Any]:
        uptime_ms = (self._clock() - self._startup_time).total_seconds() * 1000
        return {
            "uptime_ms": uptime_ms,
            "startup_time": self._startup_time.isoformat(),
            "health_status": dict(self._health_status),
            "all_healthy": all(self._health_status.values()),
            "event_counts": dict(self._event_counts),
            "error_counts": dict(self._error_counts),
        }

    def get_error_summary(self) -> dict[str, Any]:
        return {
            "total_errors": sum(self._error_counts.values()),
            "error_types": dict(self._error_counts),
            "most_common_error": max(self._error_counts.items(), key=lambda x: x[1])[0] if self._error_counts else None,
        }

    def reset_counters(self) -> None:
        self._event_counts.clear()
        self._error_counts.clear()
