"""
Contracts for the collaborators the moderation pipeline talks to.

The content store owns posts, reviews and comments; the reputation
provider owns user roles and reputation points. Both are injected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from .moderation.models import AuthorContext, ContentType, ImageDescriptor, UserPenalty


@dataclass(frozen=True)
class ContentRecord:
    content_id: str
    author_id: str
    content_type: ContentType
    text: Optional[str] = None
    images: tuple[ImageDescriptor, ...] = ()


@runtime_checkable
class ContentStore(Protocol):
    async def get_content(self, content_id: str) -> Optional[ContentRecord]:
        """Look up content by id; None when it does not exist."""
        ...

    async def set_visibility(self, content_id: str, visible: bool) -> None:
        """Show or hide content. May raise on transient failure."""
        ...


@runtime_checkable
class ReputationProvider(Protocol):
    async def has_role(self, user_id: str, role: str) -> bool:
        ...

    async def apply_penalty_effect(self, user_id: str, penalty: UserPenalty) -> None:
        """Side effect of a committed penalty, e.g. a reputation deduction."""
        ...

    async def describe_author(self, user_id: str) -> Optional[AuthorContext]:
        ...
