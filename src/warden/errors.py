"""Error taxonomy for the moderation pipeline.

Expected conditions (unknown ids, inactive moderators) are reported to
callers as return values; these exceptions are raised internally and
translated at the workflow boundary.
"""
from __future__ import annotations


class ModerationError(Exception):
    """Base class for moderation pipeline errors."""

    prefix = "Moderation error"

    def user_message(self) -> str:
        detail = str(self)
        return f"{self.prefix}: {detail}" if detail else self.prefix


class PermissionDeniedError(ModerationError):
    prefix = "Permission denied"


class NotFoundError(ModerationError):
    prefix = "Not found"


class AlreadyResolvedError(ModerationError):
    prefix = "Already resolved"


class ConsistencyError(ModerationError):
    """A write kept conflicting after the bounded number of retries."""

    prefix = "Consistency error"


class RulesValidationError(ModerationError, ValueError):
    prefix = "Invalid flagging rules"

    def __init__(self, issues: list) -> None:
        self.issues = list(issues)
        super().__init__("; ".join(f"{i.path}: {i.message}" for i in self.issues[:10]))
