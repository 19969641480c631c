"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Float,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy import JSON

Base = declarative_base()

EMAIL_STATUS_PENDING = "pending"
EMAIL_STATUS_PROCESSING = "processing"
EMAIL_STATUS_COMPLETED = "completed"
EMAIL_STATUS_FAILED = "failed"
EMAIL_STATUSES = (
    EMAIL_STATUS_PENDING,
    EMAIL_STATUS_PROCESSING,
    EMAIL_STATUS_COMPLETED,
    EMAIL_STATUS_FAILED,
)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Email(Base):
    """One ingested newsletter message. processing_status only moves forward."""
    __tablename__ = "emails"
    __table_args__ = (UniqueConstraint("user_id", "message_id", name="uq_emails_user_message"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    message_id = Column(String, nullable=False)  # source dedup key
    subject = Column(String, nullable=True)
    sender = Column(String, nullable=True)
    newsletter_name = Column(String, nullable=True)
    received_at = Column(DateTime, nullable=True)
    raw_html = Column(Text, nullable=True)
    clean_text = Column(Text, nullable=True)
    processing_status = Column(String, default=EMAIL_STATUS_PENDING, nullable=False)  # pending, processing, completed, failed
    extraction_started_at = Column(DateTime, nullable=True)
    extraction_completed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    companies_extracted = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Company(Base):
    """Per-user company registry. mention_count mirrors the CompanyMention rows."""
    __tablename__ = "companies"
    __table_args__ = (UniqueConstraint("user_id", "normalized_name", name="uq_companies_user_normalized"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    normalized_name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    industry = Column(JSON, nullable=True)  # list of strings
    mention_count = Column(Integer, default=0, nullable=False)
    first_seen_at = Column(DateTime, default=datetime.utcnow)
    last_updated_at = Column(DateTime, default=datetime.utcnow)


class CompanyMention(Base):
    """One occurrence of a company in one email. Immutable once written."""
    __tablename__ = "company_mentions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    email_id = Column(Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True)
    context = Column(Text, nullable=True)
    sentiment = Column(String(32), nullable=False, default="neutral")
    confidence = Column(Float, nullable=False, default=0.8)
    extracted_at = Column(DateTime, default=datetime.utcnow)


class SyncLock(Base):
    """Singleton lease row guarding coordinator runs (not per user)."""
    __tablename__ = "sync_lock"

    name = Column(String(64), primary_key=True)
    holder = Column(String(64), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    ttl_seconds = Column(Integer, nullable=False)


# Backlog selection: pending emails per user, newest first
Index("ix_emails_user_status_received", Email.user_id, Email.processing_status, Email.received_at)
Index("ix_companies_user_name", Company.user_id, Company.name)
