"""
HTTP surface of the pipeline: status codes, Retry-After, status payload, auth.

TestClient runs the app on its own event loop, so the app gets a NullPool engine
(no connection outlives a request) and fixtures seed the DB synchronously.
"""
from datetime import datetime
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import NullPool

from newsletter_intel.auth import create_access_token, get_current_user_required
from newsletter_intel.config import Settings, settings
from newsletter_intel.database import get_db, session_factory_for
from newsletter_intel.main import app
from newsletter_intel.models import Base, Email, SyncLock, User, EMAIL_STATUS_PENDING
from newsletter_intel.pipeline_status import InMemoryPipelineStatusStore
from newsletter_intel.routers.pipeline import _poll_status_events, get_coordinator
from newsletter_intel.schemas import SourceEmail
from newsletter_intel.services.sync_coordinator import SyncCoordinator
from newsletter_intel.sync_lock import SYNC_LOCK_NAME, SyncLockManager

from fakes import FakeExtractor, FakeSource, RecordingPublisher, long_text


@pytest.fixture
def api(tmp_path):
    db_path = tmp_path / "api.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    with Session(sync_engine) as db:
        user = User(email="reader@example.com", name="Reader")
        db.add(user)
        db.commit()
        uid = user.id

    async_engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    factory = session_factory_for(async_engine)
    test_settings = Settings(_env_file=None, openai_api_key="test-key")

    def make(source=None, extractor=None):
        coordinator = SyncCoordinator(
            session_factory=factory,
            source=source or FakeSource(),
            extractor=extractor or FakeExtractor(lambda text, source: ["Acme"]),
            publisher=RecordingPublisher(),
            status_store=InMemoryPipelineStatusStore(),
            lock_manager=SyncLockManager(factory, ttl_s=test_settings.sync_lock_ttl_s),
            settings=test_settings,
        )
        app.dependency_overrides[get_coordinator] = lambda: coordinator
        return coordinator

    def add_pending(count):
        with Session(sync_engine) as db:
            for i in range(count):
                db.add(
                    Email(
                        user_id=uid,
                        message_id=f"pending-{i}",
                        subject=f"Issue {i}",
                        sender="Morning Brew <crew@morningbrew.substack.com>",
                        newsletter_name="Morning Brew",
                        received_at=datetime.utcnow(),
                        clean_text=long_text(f"issue {i}"),
                        processing_status=EMAIL_STATUS_PENDING,
                    )
                )
            db.commit()

    def hold_lock():
        with Session(sync_engine) as db:
            db.add(SyncLock(name=SYNC_LOCK_NAME, holder="other-run", acquired_at=datetime.utcnow(), ttl_seconds=600))
            db.commit()

    async def _db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_current_user_required] = lambda: User(id=uid, email="reader@example.com")
    make()
    try:
        yield SimpleNamespace(
            client=TestClient(app), user_id=uid, make=make, add_pending=add_pending, hold_lock=hold_lock
        )
    finally:
        app.dependency_overrides.clear()
        sync_engine.dispose()


def test_health(api):
    assert api.client.get("/api/health").json() == {"status": "ok"}


def test_sync_then_skip_when_fresh(api):
    emails = [SourceEmail(external_id=f"g{i}", sender="Morning Brew <a@b.c>", text=long_text(str(i))) for i in range(2)]
    api.make(source=FakeSource(emails))

    resp = api.client.post("/api/pipeline/sync")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "complete"
    assert body["emails_fetched"] == 2
    assert body["processed"] == 2
    assert body["new_companies"] == 1

    again = api.client.post("/api/pipeline/sync")
    assert again.status_code == 200
    assert again.json()["status"] == "skipped"

    forced = api.client.post("/api/pipeline/sync", json={"force_refresh": True})
    assert forced.json()["status"] == "complete"


def test_sync_busy_returns_429_with_retry_after(api):
    api.hold_lock()
    resp = api.client.post("/api/pipeline/sync")
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) > 0
    body = resp.json()
    assert body["status"] == "busy"
    assert body["retry_after_s"] > 0


def test_sync_not_configured_returns_400(api):
    api.make(source=FakeSource(configured=False))
    resp = api.client.post("/api/pipeline/sync")
    assert resp.status_code == 400
    assert resp.json()["status"] == "not_configured"


def test_sync_rejects_invalid_options(api):
    assert api.client.post("/api/pipeline/sync", json={"days_back": 0}).status_code == 422


def test_status_reports_backlog_and_lock(api):
    api.add_pending(3)
    api.hold_lock()

    body = api.client.get("/api/pipeline/status").json()
    assert body["status"] == "idle"
    assert body["pending_emails"] == 3
    assert body["lock"]["held"] is True
    assert body["lock"]["retry_after_s"] > 0


def test_unlock(api):
    api.hold_lock()
    assert api.client.post("/api/pipeline/unlock").json() == {"released": True}
    assert api.client.post("/api/pipeline/unlock").json() == {"released": False}
    assert api.client.get("/api/pipeline/status").json()["lock"]["held"] is False


def test_process_background_drains_one_batch(api):
    api.add_pending(4)
    resp = api.client.post("/api/pipeline/process-background", json={"batch_size": 3, "max_processing_time_s": 30})
    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] == 3
    assert body["remaining"] == 1
    assert body["companies_extracted"] == 3

    status = api.client.get("/api/pipeline/status").json()
    assert status["status"] == "complete"
    assert status["pending_emails"] == 1


def test_auth_not_configured_is_500(api, monkeypatch):
    del app.dependency_overrides[get_current_user_required]
    monkeypatch.setattr(settings, "secret_key", "")
    monkeypatch.setattr(settings, "api_key", "")
    assert api.client.get("/api/pipeline/status").status_code == 500


def test_api_key_and_jwt_auth(api, monkeypatch):
    del app.dependency_overrides[get_current_user_required]
    monkeypatch.setattr(settings, "secret_key", "unit-test-secret")
    monkeypatch.setattr(settings, "api_key", "key-123")
    monkeypatch.setattr(settings, "api_key_user_id", api.user_id)

    assert api.client.get("/api/pipeline/status", headers={"X-API-Key": "key-123"}).status_code == 200
    assert api.client.get("/api/pipeline/status", headers={"X-API-Key": "wrong"}).status_code == 401

    token = create_access_token(api.user_id, "reader@example.com")
    resp = api.client.get("/api/pipeline/status", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert api.client.get("/api/pipeline/status", headers={"Authorization": "Bearer nope"}).status_code == 401


class _ConnectedRequest:
    async def is_disconnected(self):
        return False


@pytest.mark.asyncio
async def test_status_polling_fallback_stops_at_terminal_state(make_coordinator, user_id):
    coordinator = make_coordinator()
    await coordinator._set_status(user_id, "complete", 100, "Done")

    events = [e async for e in _poll_status_events(coordinator, user_id, _ConnectedRequest())]
    assert len(events) == 1
    assert events[0]["event"] == "status"
    assert '"complete"' in events[0]["data"]
