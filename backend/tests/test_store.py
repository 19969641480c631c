"""Store helpers: ingestion dedup, forward-only status moves, backlog ordering, schema check."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from newsletter_intel.errors import ConfigurationError
from newsletter_intel.models import Email, EMAIL_STATUS_COMPLETED, EMAIL_STATUS_FAILED, EMAIL_STATUS_PROCESSING
from newsletter_intel.schemas import SourceEmail
from newsletter_intel.store import (
    check_schema,
    count_pending_emails,
    insert_email_if_absent,
    latest_email_received_at,
    list_pending_emails,
    mark_email_completed,
    mark_email_failed,
    mark_email_processing,
)


async def _email(session_factory, email_id):
    async with session_factory() as db:
        return await db.get(Email, email_id)


@pytest.mark.asyncio
async def test_insert_if_absent_skips_existing_without_overwriting(session_factory, user_id):
    fetched = SourceEmail(
        external_id="gmail-1",
        sender="Lenny <lenny@substack.com>",
        subject="Issue 1",
        text="first body",
        received_at=datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc),
    )
    async with session_factory() as db:
        assert await insert_email_if_absent(db, user_id, fetched) is True
        await db.commit()
        email_id = (await list_pending_emails(db, user_id, 10))[0].id
        assert await mark_email_processing(db, email_id, datetime.utcnow())
        await mark_email_completed(db, email_id, 4, datetime.utcnow())

        refetched = fetched.model_copy(update={"text": "changed body"})
        assert await insert_email_if_absent(db, user_id, refetched) is False
        await db.commit()

    stored = await _email(session_factory, email_id)
    assert stored.processing_status == EMAIL_STATUS_COMPLETED
    assert stored.clean_text == "first body"
    assert stored.companies_extracted == 4
    # tz-aware timestamps are stored as naive UTC
    assert stored.received_at == datetime(2026, 1, 10, 9, 0)


@pytest.mark.asyncio
async def test_status_only_moves_forward(session_factory, user_id, add_emails):
    [email_id] = await add_emails(user_id, ["body " * 10])
    now = datetime.utcnow()
    async with session_factory() as db:
        assert await mark_email_processing(db, email_id, now) is True
        # A second claim finds it no longer pending
        assert await mark_email_processing(db, email_id, now) is False
        await mark_email_failed(db, email_id, "boom", now)
        # Completion after failure is ignored
        await mark_email_completed(db, email_id, 3, now)

    stored = await _email(session_factory, email_id)
    assert stored.processing_status == EMAIL_STATUS_FAILED
    assert stored.error_message == "boom"
    assert stored.companies_extracted == 0


@pytest.mark.asyncio
async def test_completion_clears_previous_error(session_factory, user_id, add_emails):
    [email_id] = await add_emails(user_id, ["body " * 10])
    now = datetime.utcnow()
    async with session_factory() as db:
        await db.execute(text("UPDATE emails SET error_message = 'old' WHERE id = :id"), {"id": email_id})
        await db.commit()
        await mark_email_processing(db, email_id, now)
        stored = await db.get(Email, email_id)
        assert stored.processing_status == EMAIL_STATUS_PROCESSING
        await mark_email_completed(db, email_id, 2, now)

    stored = await _email(session_factory, email_id)
    assert stored.error_message is None
    assert stored.extraction_completed_at is not None


@pytest.mark.asyncio
async def test_pending_listing_is_newest_first_and_limited(session_factory, user_id, add_emails):
    ids = await add_emails(user_id, ["one " * 10, "two " * 10, "three " * 10])
    await add_emails(user_id, ["done " * 10], status=EMAIL_STATUS_COMPLETED)
    async with session_factory() as db:
        pending = await list_pending_emails(db, user_id, 2)
        assert [p.id for p in pending] == ids[:2]
        assert await count_pending_emails(db, user_id) == 3
        assert await count_pending_emails(db, user_id + 1) == 0


@pytest.mark.asyncio
async def test_latest_received_at(session_factory, user_id, add_emails, wall_clock):
    async with session_factory() as db:
        assert await latest_email_received_at(db, user_id) is None
    await add_emails(user_id, ["a " * 20, "b " * 20])
    async with session_factory() as db:
        latest = await latest_email_received_at(db, user_id)
    assert latest == wall_clock()
    assert latest > wall_clock() - timedelta(hours=1)


@pytest.mark.asyncio
async def test_check_schema_passes_on_current_models(session_factory):
    async with session_factory() as db:
        await check_schema(db)


@pytest.mark.asyncio
async def test_check_schema_reports_missing_columns(session_factory):
    async with session_factory() as db:
        await db.execute(text("DROP TABLE company_mentions"))
        await db.execute(text("DROP TABLE emails"))
        await db.execute(text("CREATE TABLE emails (id INTEGER PRIMARY KEY, user_id INTEGER)"))
        await db.commit()
        with pytest.raises(ConfigurationError) as exc:
            await check_schema(db)
    assert "processing_status" in str(exc.value)
