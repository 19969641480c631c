"""Persistence helpers for the extraction pipeline (emails, companies, mentions).

Every function is scoped by user_id. Email status writes are `UPDATE ... WHERE id`
statements rather than ORM attribute mutation, so a rollback after a failed
mention never leaves expired instances behind for the next email.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, inspect, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConfigurationError
from .models import (
    Company,
    CompanyMention,
    Email,
    EMAIL_STATUS_COMPLETED,
    EMAIL_STATUS_FAILED,
    EMAIL_STATUS_PENDING,
    EMAIL_STATUS_PROCESSING,
)
from .schemas import SourceEmail

REQUIRED_EMAIL_COLUMNS = {
    "id",
    "user_id",
    "message_id",
    "processing_status",
    "clean_text",
    "raw_html",
    "received_at",
    "extraction_started_at",
    "extraction_completed_at",
    "error_message",
    "companies_extracted",
}


@dataclass(frozen=True)
class PendingEmail:
    """The fields the batch runner needs, detached from the session."""

    id: int
    subject: Optional[str]
    newsletter_name: Optional[str]
    clean_text: Optional[str]
    raw_html: Optional[str]

    @property
    def display_name(self) -> str:
        return self.newsletter_name or self.subject or f"email {self.id}"


@dataclass(frozen=True)
class CompanyRef:
    id: int
    name: str
    mention_count: int


async def check_schema(db: AsyncSession) -> None:
    """Raise ConfigurationError when the emails table lacks columns the pipeline writes."""

    def _columns(sync_conn) -> set[str]:
        insp = inspect(sync_conn)
        if "emails" not in insp.get_table_names():
            return set()
        return {c["name"] for c in insp.get_columns("emails")}

    conn = await db.connection()
    present = await conn.run_sync(_columns)
    missing = sorted(REQUIRED_EMAIL_COLUMNS - present)
    if missing:
        raise ConfigurationError(
            f"Database schema is missing required email columns: {', '.join(missing)}. Run migrations."
        )


# ----------------------------
# Emails
# ----------------------------

async def list_pending_emails(db: AsyncSession, user_id: int, limit: int) -> list[PendingEmail]:
    """Pending emails for a user, newest received first."""
    result = await db.execute(
        select(Email.id, Email.subject, Email.newsletter_name, Email.clean_text, Email.raw_html)
        .where(Email.user_id == user_id, Email.processing_status == EMAIL_STATUS_PENDING)
        .order_by(Email.received_at.desc().nulls_last(), Email.id.desc())
        .limit(max(0, limit))
    )
    return [PendingEmail(*row) for row in result.all()]


async def count_pending_emails(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.count(Email.id)).where(
            Email.user_id == user_id, Email.processing_status == EMAIL_STATUS_PENDING
        )
    )
    return int(result.scalar_one() or 0)


async def mark_email_processing(db: AsyncSession, email_id: int, now: datetime) -> bool:
    """pending -> processing. False when another writer already moved the email on."""
    result = await db.execute(
        update(Email)
        .where(Email.id == email_id, Email.processing_status == EMAIL_STATUS_PENDING)
        .values(
            processing_status=EMAIL_STATUS_PROCESSING,
            extraction_started_at=now,
            processed_at=now,
            error_message=None,
        )
    )
    await db.commit()
    return (result.rowcount or 0) > 0


async def mark_email_completed(db: AsyncSession, email_id: int, companies_extracted: int, now: datetime) -> None:
    await db.execute(
        update(Email)
        .where(Email.id == email_id, Email.processing_status == EMAIL_STATUS_PROCESSING)
        .values(
            processing_status=EMAIL_STATUS_COMPLETED,
            extraction_completed_at=now,
            processed_at=now,
            companies_extracted=companies_extracted,
            error_message=None,
        )
    )
    await db.commit()


async def mark_email_failed(db: AsyncSession, email_id: int, error: str, now: datetime) -> None:
    await db.execute(
        update(Email)
        .where(Email.id == email_id, Email.processing_status == EMAIL_STATUS_PROCESSING)
        .values(
            processing_status=EMAIL_STATUS_FAILED,
            extraction_completed_at=now,
            processed_at=now,
            error_message=(error or "Unknown error")[:2000],
        )
    )
    await db.commit()


async def latest_email_received_at(db: AsyncSession, user_id: int) -> Optional[datetime]:
    result = await db.execute(select(func.max(Email.received_at)).where(Email.user_id == user_id))
    return result.scalar_one_or_none()


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise ConfigurationError(f"Unsupported database dialect for email ingestion: {dialect}")


async def insert_email_if_absent(db: AsyncSession, user_id: int, email: SourceEmail) -> bool:
    """
    Queue a fetched email as pending. Insert-skip-on-conflict on (user_id, message_id):
    an existing row keeps its status and extraction results.
    Returns True when a new row was inserted. Caller commits.
    """
    insert = _insert_for(db)
    received = email.received_at
    if received is not None and received.tzinfo is not None:
        received = received.astimezone(timezone.utc).replace(tzinfo=None)
    stmt = (
        insert(Email)
        .values(
            user_id=user_id,
            message_id=email.external_id,
            subject=(email.subject or "")[:500],
            sender=(email.sender or "")[:255],
            newsletter_name=email.newsletter_name,
            received_at=received,
            raw_html=email.html,
            clean_text=email.text,
            processing_status=EMAIL_STATUS_PENDING,
            companies_extracted=0,
            created_at=datetime.utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["user_id", "message_id"])
    )
    result = await db.execute(stmt)
    return (result.rowcount or 0) > 0


# ----------------------------
# Companies
# ----------------------------

async def find_company_by_name(db: AsyncSession, user_id: int, name: str) -> Optional[CompanyRef]:
    """Case-insensitive exact name match within one user's registry."""
    result = await db.execute(
        select(Company.id, Company.name, Company.mention_count)
        .where(Company.user_id == user_id, func.lower(Company.name) == name.strip().lower())
        .order_by(Company.id)
        .limit(1)
    )
    row = result.first()
    return CompanyRef(*row) if row else None


async def create_company(
    db: AsyncSession,
    user_id: int,
    name: str,
    normalized_name: str,
    description: Optional[str],
    industry: list[str],
    now: datetime,
) -> int:
    """Insert a company with mention_count=1. Caller commits."""
    company = Company(
        user_id=user_id,
        name=name,
        normalized_name=normalized_name,
        description=description,
        industry=industry,
        mention_count=1,
        first_seen_at=now,
        last_updated_at=now,
    )
    db.add(company)
    await db.flush()
    return company.id


async def increment_company_mentions(db: AsyncSession, company_id: int, now: datetime) -> None:
    """Atomic mention_count + 1. Caller commits."""
    await db.execute(
        update(Company)
        .where(Company.id == company_id)
        .values(mention_count=Company.mention_count + 1, last_updated_at=now)
    )


async def add_company_mention(
    db: AsyncSession,
    user_id: int,
    company_id: int,
    email_id: int,
    context: str,
    sentiment: str,
    confidence: float,
    now: datetime,
) -> None:
    """Caller commits."""
    db.add(
        CompanyMention(
            user_id=user_id,
            company_id=company_id,
            email_id=email_id,
            context=context,
            sentiment=sentiment,
            confidence=confidence,
            extracted_at=now,
        )
    )
    await db.flush()
