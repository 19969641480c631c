"""
Extraction batch runner: one bounded slice of a user's pending emails.

Emails are processed one at a time, newest first. Each email moves
pending -> processing -> completed|failed; an exception while handling one email
marks only that email failed and the batch moves on. The time budget is checked
between emails, never mid-extraction.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, settings as default_settings
from ..errors import ExtractionError
from ..progress import ProgressEvent, ProgressPublisher, publish_safely
from ..schemas import BatchResult
from ..store import (
    PendingEmail,
    count_pending_emails,
    list_pending_emails,
    mark_email_completed,
    mark_email_failed,
    mark_email_processing,
)
from .entity_resolver import resolve_mention
from .extractor import Extractor

logger = logging.getLogger(__name__)

EVENT_EMAIL_PROCESSED = "email_processed"
UNKNOWN_NEWSLETTER = "Unknown Newsletter"


class ExtractionBatchRunner:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        extractor: Extractor,
        publisher: Optional[ProgressPublisher] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.extractor = extractor
        self.publisher = publisher
        self.settings = settings or default_settings
        self.clock = clock
        self.now = now

    async def run(self, user_id: int, batch_size: int, max_processing_time_s: float) -> BatchResult:
        started = self.clock()
        result = BatchResult()
        errors: list[str] = []
        stats: Counter = Counter()

        async with self.session_factory() as db:
            emails = await list_pending_emails(db, user_id, batch_size)
            if not emails:
                return result

            logger.info(f"Batch for user {user_id}: {len(emails)} pending emails (budget {max_processing_time_s:.0f}s)")
            for email in emails:
                elapsed = self.clock() - started
                if elapsed >= max_processing_time_s:
                    logger.info(f"Batch budget reached after {elapsed:.1f}s, {result.processed} emails processed")
                    break

                if not await mark_email_processing(db, email.id, self.now()):
                    logger.debug(f"Email {email.id} is no longer pending, skipping")
                    continue

                try:
                    saved = await self._process_email(db, user_id, email, stats)
                    result.companies_extracted += saved
                    await self._publish(user_id, email, result, ok=True, companies=saved)
                except Exception as e:
                    message = str(e) or e.__class__.__name__
                    logger.error(f"Email {email.id} ({email.display_name}) failed: {message}")
                    await db.rollback()
                    try:
                        await mark_email_failed(db, email.id, message, self.now())
                    except SQLAlchemyError as mark_error:
                        await db.rollback()
                        logger.error(f"Could not mark email {email.id} failed: {mark_error}")
                    result.failed += 1
                    errors.append(f"Email {email.id}: {message}")
                    await self._publish(user_id, email, result, ok=False, error=message)
                result.processed += 1

            result.remaining = await count_pending_emails(db, user_id)

        result.new_companies = stats["created"]
        result.errors = errors or None
        logger.info(
            f"Batch done for user {user_id}: processed={result.processed} failed={result.failed} "
            f"companies={result.companies_extracted} remaining={result.remaining}"
        )
        return result

    async def _process_email(self, db: AsyncSession, user_id: int, email: PendingEmail, stats: Counter) -> int:
        """Extract and resolve one email. Returns the number of mentions durably saved."""
        text = (email.clean_text or "").strip()
        if len(text) < self.settings.min_content_length:
            logger.info(f"Email {email.id} has too little content ({len(text)} chars), completing without extraction")
            await mark_email_completed(db, email.id, 0, self.now())
            return 0

        extraction = await self.extractor.extract(text, email.newsletter_name or UNKNOWN_NEWSLETTER)
        if extraction.metadata.error:
            raise ExtractionError(extraction.metadata.error)

        saved = 0
        for company in extraction.companies:
            if await resolve_mention(db, user_id, email.id, company, now=self.now(), stats=stats):
                saved += 1
            else:
                logger.warning(f"Mention of '{company.name}' from email {email.id} was not saved")

        await mark_email_completed(db, email.id, saved, self.now())
        return saved

    async def _publish(
        self,
        user_id: int,
        email: PendingEmail,
        result: BatchResult,
        ok: bool,
        companies: int = 0,
        error: Optional[str] = None,
    ) -> None:
        event = ProgressEvent(
            type=EVENT_EMAIL_PROCESSED,
            status="extracting",
            message=f"{'Processed' if ok else 'Failed'} {email.display_name}",
            stats={
                "processed": result.processed + 1,
                "companies_extracted": result.companies_extracted,
                "failed": result.failed,
            },
            data={"email_id": email.id, "ok": ok, "companies": companies, "error": error},
        )
        await publish_safely(self.publisher, user_id, event, self.settings.progress_publish_timeout_s)
