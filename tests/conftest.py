"""
Pytest configuration and shared fixtures.

This module provides:
- A temp-file SQLite database per test
- In-memory fakes for the content store and reputation collaborators
- A controllable clock
- A fully wired ModerationService
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from warden.config import Settings
from warden.moderation.models import ContentSubmission, ContentType, ModeratorRole
from warden.service import create_service
from warden.testing.fakes import FakeContentStore, FakeReputation


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sqlite_path(tmp_path) -> str:
    return str(tmp_path / "warden-test.sqlite3")


@pytest.fixture
def settings(sqlite_path) -> Settings:
    return Settings(sqlite_path=sqlite_path, batch_concurrency=4)


@pytest.fixture
def content_store() -> FakeContentStore:
    return FakeContentStore()


@pytest.fixture
def reputation() -> FakeReputation:
    return FakeReputation()


@pytest_asyncio.fixture
async def service(settings, content_store, reputation, clock):
    return await create_service(
        settings,
        content_store=content_store,
        reputation=reputation,
        clock=clock,
        retry_base_delay=0,
    )


@pytest_asyncio.fixture
async def moderator(service, reputation) -> str:
    await service.workflow.register_moderator("mod-1", "alice")
    reputation.grant("mod-1")
    return "mod-1"


@pytest_asyncio.fixture
async def senior_moderator(service, reputation) -> str:
    await service.workflow.register_moderator("mod-senior", "bob", ModeratorRole.SENIOR)
    reputation.grant("mod-senior")
    return "mod-senior"


@pytest.fixture
def submit(service, content_store):
    """Register content with the fake store and run it through the pipeline."""

    async def _submit(content_id: str, text: str, author_id: str = "author-1", **kwargs):
        content_store.add(content_id, author_id, text)
        submission = ContentSubmission(
            content_id=content_id,
            content_type=kwargs.pop("content_type", ContentType.POST),
            author_id=author_id,
            text=text,
            **kwargs,
        )
        return await service.classify_and_flag(submission)

    return _submit
