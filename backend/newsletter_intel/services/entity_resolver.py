"""Merge extracted company mentions into a user's company registry."""

from __future__ import annotations

import itertools
import logging
import re
import time
from collections import Counter
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..schemas import ExtractedCompany
from ..store import add_company_mention, create_company, find_company_by_name, increment_company_mentions

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8
DEFAULT_SENTIMENT = "neutral"
DEFAULT_CONTEXT = "Mentioned in newsletter"

_suffix_counter = itertools.count()


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower())
    return slug.strip("-")


def unique_suffix() -> str:
    """Time-derived token plus a per-process counter; two creations never share one."""
    return f"{int(time.time() * 1000):x}{next(_suffix_counter):x}"


def normalized_name_for(name: str) -> str:
    base = slugify(name) or "company"
    return f"{base}-{unique_suffix()}"


def _confidence(value: Optional[float]) -> float:
    if value is None:
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, float(value)))


async def resolve_mention(
    db: AsyncSession,
    user_id: int,
    email_id: int,
    company: ExtractedCompany,
    now: Optional[datetime] = None,
    stats: Optional[Counter] = None,
) -> bool:
    """
    Find-or-create the company (case-insensitive name, scoped to user) and record the mention.

    Company write and mention insert commit together. Returns True only when both
    are durably saved; on a write failure the transaction is rolled back and the
    mention is reported unsaved.
    """
    name = (company.name or "").strip()
    if not name:
        return False
    now = now or datetime.utcnow()
    try:
        existing = await find_company_by_name(db, user_id, name)
        if existing is not None:
            company_id = existing.id
            await increment_company_mentions(db, company_id, now)
            created = False
        else:
            company_id = await create_company(
                db,
                user_id=user_id,
                name=name,
                normalized_name=normalized_name_for(name),
                description=company.description,
                industry=list(company.industry or []),
                now=now,
            )
            created = True
        await add_company_mention(
            db,
            user_id=user_id,
            company_id=company_id,
            email_id=email_id,
            context=company.context or DEFAULT_CONTEXT,
            sentiment=company.sentiment or DEFAULT_SENTIMENT,
            confidence=_confidence(company.confidence),
            now=now,
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Could not save mention of '{name}' from email {email_id}: {e}")
        if stats is not None:
            stats["failed"] += 1
        return False

    if stats is not None:
        stats["created" if created else "updated"] += 1
    return True
