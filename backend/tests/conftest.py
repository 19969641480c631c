"""Pytest fixtures: per-test sqlite DB, pipeline fakes, API client."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")

import itertools
from datetime import timedelta

import pytest

from newsletter_intel.config import Settings
from newsletter_intel.database import create_engine_for, init_db, session_factory_for
from newsletter_intel.models import Email, User, EMAIL_STATUS_PENDING
from newsletter_intel.pipeline_status import InMemoryPipelineStatusStore
from newsletter_intel.services.sync_coordinator import SyncCoordinator
from newsletter_intel.sync_lock import SyncLockManager

from fakes import FakeClock, FakeExtractor, FakeSource, FakeWallClock, RecordingPublisher

_message_ids = itertools.count(1)


@pytest.fixture
async def engine(tmp_path):
    """
    File-based sqlite DB so concurrent sessions (lock races, API + pipeline)
    see each other's commits.
    """
    engine = create_engine_for(f"sqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return session_factory_for(engine)


@pytest.fixture
def test_settings():
    return Settings(_env_file=None, openai_api_key="test-key")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return FakeWallClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
async def user_id(session_factory):
    async with session_factory() as db:
        user = User(email="reader@example.com", name="Reader")
        db.add(user)
        await db.commit()
        return user.id


@pytest.fixture
def add_emails(session_factory, wall_clock):
    """add_emails(user_id, texts) -> ids; the first text is the newest email."""

    async def _add(user_id: int, texts: list, status: str = EMAIL_STATUS_PENDING, newsletter: str = "Morning Brew"):
        ids = []
        async with session_factory() as db:
            for i, text in enumerate(texts):
                email = Email(
                    user_id=user_id,
                    message_id=f"msg-{next(_message_ids)}",
                    subject=f"Issue {i}",
                    sender=f"{newsletter} <crew@example.substack.com>",
                    newsletter_name=newsletter,
                    received_at=wall_clock() - timedelta(hours=i),
                    clean_text=text,
                    processing_status=status,
                )
                db.add(email)
                await db.flush()
                ids.append(email.id)
            await db.commit()
        return ids

    return _add


@pytest.fixture
def lock_manager(session_factory, test_settings, wall_clock):
    return SyncLockManager(session_factory, ttl_s=test_settings.sync_lock_ttl_s, clock=wall_clock)


@pytest.fixture
def make_coordinator(session_factory, test_settings, clock, wall_clock, publisher, lock_manager):
    def _make(source=None, extractor=None, settings=None, status_store=None, publisher_override=None):
        return SyncCoordinator(
            session_factory=session_factory,
            source=source or FakeSource(),
            extractor=extractor or FakeExtractor(),
            publisher=publisher_override or publisher,
            status_store=status_store or InMemoryPipelineStatusStore(),
            lock_manager=lock_manager,
            settings=settings or test_settings,
            clock=clock,
            now=wall_clock,
        )

    return _make
