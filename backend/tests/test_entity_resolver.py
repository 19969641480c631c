"""Entity resolution: case-insensitive dedup per user, mention bookkeeping, unsaved mentions."""
from collections import Counter
from datetime import datetime

import pytest
from sqlalchemy import func, select

from newsletter_intel.models import Company, CompanyMention, User
from newsletter_intel.schemas import ExtractedCompany
from newsletter_intel.services.entity_resolver import (
    DEFAULT_CONFIDENCE,
    DEFAULT_CONTEXT,
    DEFAULT_SENTIMENT,
    normalized_name_for,
    resolve_mention,
    slugify,
)


async def _companies(session_factory, user_id):
    async with session_factory() as db:
        result = await db.execute(select(Company).where(Company.user_id == user_id))
        return result.scalars().all()


async def _mention_count(session_factory, company_id):
    async with session_factory() as db:
        result = await db.execute(
            select(func.count(CompanyMention.id)).where(CompanyMention.company_id == company_id)
        )
        return result.scalar_one()


@pytest.mark.asyncio
async def test_same_name_any_case_resolves_to_one_company(session_factory, user_id, add_emails):
    email_ids = await add_emails(user_id, ["a" * 50, "b" * 50, "c" * 50])
    stats = Counter()
    async with session_factory() as db:
        for email_id, name in zip(email_ids, ["Acme", "ACME", "acme"]):
            assert await resolve_mention(db, user_id, email_id, ExtractedCompany(name=name), stats=stats)

    companies = await _companies(session_factory, user_id)
    assert len(companies) == 1
    assert companies[0].name == "Acme"
    assert companies[0].mention_count == 3
    assert await _mention_count(session_factory, companies[0].id) == 3
    assert stats == Counter({"created": 1, "updated": 2})


@pytest.mark.asyncio
async def test_registry_is_scoped_per_user(session_factory, user_id, add_emails):
    async with session_factory() as db:
        other = User(email="other@example.com")
        db.add(other)
        await db.commit()
        other_id = other.id
    [mine] = await add_emails(user_id, ["x" * 40])
    [theirs] = await add_emails(other_id, ["y" * 40])

    async with session_factory() as db:
        assert await resolve_mention(db, user_id, mine, ExtractedCompany(name="Glossier"))
        assert await resolve_mention(db, other_id, theirs, ExtractedCompany(name="glossier"))

    assert len(await _companies(session_factory, user_id)) == 1
    assert len(await _companies(session_factory, other_id)) == 1


@pytest.mark.asyncio
async def test_mention_defaults_applied(session_factory, user_id, add_emails):
    [email_id] = await add_emails(user_id, ["z" * 40])
    async with session_factory() as db:
        assert await resolve_mention(db, user_id, email_id, ExtractedCompany(name="Olipop"))
        mention = (await db.execute(select(CompanyMention))).scalars().one()
    assert mention.confidence == DEFAULT_CONFIDENCE
    assert mention.sentiment == DEFAULT_SENTIMENT
    assert mention.context == DEFAULT_CONTEXT
    assert mention.email_id == email_id


@pytest.mark.asyncio
async def test_timestamps_use_given_time_or_utcnow(session_factory, user_id, add_emails, wall_clock):
    first, second = await add_emails(user_id, ["z" * 40, "y" * 40])
    async with session_factory() as db:
        assert await resolve_mention(db, user_id, first, ExtractedCompany(name="Athletic Brewing"), now=wall_clock())
        before = datetime.utcnow()
        assert await resolve_mention(db, user_id, second, ExtractedCompany(name="athletic brewing"))
        after = datetime.utcnow()
    async with session_factory() as db:
        mentions = (await db.execute(select(CompanyMention).order_by(CompanyMention.id))).scalars().all()
        company = (await db.execute(select(Company))).scalars().one()

    assert mentions[0].extracted_at == wall_clock()
    assert company.first_seen_at == wall_clock()
    assert before <= mentions[1].extracted_at <= after
    assert before <= company.last_updated_at <= after


@pytest.mark.asyncio
async def test_extractor_values_passed_through_and_confidence_clamped(session_factory, user_id, add_emails):
    [email_id] = await add_emails(user_id, ["z" * 40])
    company = ExtractedCompany(
        name="Liquid Death",
        description="Canned water brand",
        industry="Beverages",
        context="Liquid Death raised a new round",
        confidence=1.7,
        sentiment="positive",
    )
    async with session_factory() as db:
        assert await resolve_mention(db, user_id, email_id, company)
        mention = (await db.execute(select(CompanyMention))).scalars().one()
        stored = (await db.execute(select(Company))).scalars().one()
    assert mention.confidence == 1.0
    assert mention.sentiment == "positive"
    assert mention.context == "Liquid Death raised a new round"
    assert stored.industry == ["Beverages"]
    assert stored.description == "Canned water brand"


@pytest.mark.asyncio
async def test_failed_write_is_rolled_back_and_reported_unsaved(session_factory, user_id):
    stats = Counter()
    async with session_factory() as db:
        # No such email: the mention's foreign key fails at flush
        saved = await resolve_mention(db, user_id, 999_999, ExtractedCompany(name="Ghost Co"), stats=stats)
    assert saved is False
    assert stats["failed"] == 1
    assert await _companies(session_factory, user_id) == []


@pytest.mark.asyncio
async def test_blank_name_is_not_saved(session_factory, user_id, add_emails):
    [email_id] = await add_emails(user_id, ["z" * 40])
    async with session_factory() as db:
        assert await resolve_mention(db, user_id, email_id, ExtractedCompany(name="   ")) is False
    assert await _companies(session_factory, user_id) == []


def test_slugify_collapses_and_trims():
    assert slugify("  Acme, Inc.!! ") == "acme-inc"
    assert slugify("Ben & Jerry's") == "ben-jerry-s"
    assert slugify("***") == ""


def test_normalized_names_are_unique_for_same_name():
    names = {normalized_name_for("Acme") for _ in range(50)}
    assert len(names) == 50
    assert all(n.startswith("acme-") for n in names)
    assert normalized_name_for("!!!").startswith("company-")
