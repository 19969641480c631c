"""
Sync coordinator: one end-to-end pipeline run for a user.

Order of a run:
  1. configuration check (source credentials, extractor key, schema) - no lock taken
  2. live lock held by another run -> busy, with age and retry-after
  3. data fresh (and not force_refresh) -> skipped, lock never taken
  4. acquire lease, arm the safety timer that force-releases it before the host deadline
  5. fetch new emails since max(days_back, newest stored email - overlap), queue as pending
     (rate limit or fetch timeout -> backlog-only mode, never an abort)
  6. continuation loop drains the backlog
  7. cancel the timer and release the lease on every exit path
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, settings as default_settings
from ..errors import ConfigurationError, SourceError
from ..pipeline_status import PipelineStats, PipelineStatus, PipelineStatusStore
from ..progress import EVENT_ERROR, ProgressEvent, ProgressPublisher, publish_safely
from ..schemas import BatchOptions, BatchResult, SyncOptions, SyncResult
from ..store import check_schema, insert_email_if_absent, latest_email_received_at
from ..sync_lock import Lease, LockHeld, SyncLockManager
from .batch_runner import ExtractionBatchRunner
from .continuation import ContinuationLoop
from .extractor import Extractor
from .source_connector import SourceConnector

logger = logging.getLogger(__name__)


class SyncCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: SourceConnector,
        extractor: Extractor,
        publisher: Optional[ProgressPublisher],
        status_store: PipelineStatusStore,
        lock_manager: SyncLockManager,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.source = source
        self.extractor = extractor
        self.publisher = publisher
        self.status_store = status_store
        self.lock = lock_manager
        self.settings = settings or default_settings
        self.clock = clock
        self.now = now
        self.runner = ExtractionBatchRunner(
            session_factory, extractor, publisher, self.settings, clock=clock, now=now
        )
        self.loop = ContinuationLoop(
            self.runner, status_store, publisher, self.settings, clock=clock, now=now
        )
        self._schema_checked = False

    async def get_status(self, user_id: int) -> PipelineStatus:
        return await self.status_store.get(user_id)

    async def ensure_configured(self, user_id: int) -> None:
        if not self.source.is_configured(user_id):
            raise ConfigurationError("Newsletter source is not connected. Connect Gmail and try again.")
        is_configured = getattr(self.extractor, "is_configured", None)
        if is_configured is not None and not is_configured():
            raise ConfigurationError("Company extractor is not configured. Set OPENAI_API_KEY.")
        if not self._schema_checked:
            async with self.session_factory() as db:
                await check_schema(db)
            self._schema_checked = True

    def _busy(self, held: LockHeld) -> SyncResult:
        return SyncResult(
            success=False,
            status="busy",
            message=f"Sync already in progress (running for {held.age_s:.0f}s). Try again shortly.",
            lock_age_s=held.age_s,
            retry_after_s=held.retry_after_s,
        )

    async def _is_fresh(self, user_id: int) -> bool:
        status = await self.status_store.get(user_id)
        if status.last_sync is None:
            return False
        age = (self.now() - status.last_sync).total_seconds()
        return 0 <= age < self.settings.freshness_window_s

    async def run_sync(self, user_id: int, options: Optional[SyncOptions] = None) -> SyncResult:
        options = options or SyncOptions(days_back=self.settings.default_days_back)
        run_started_at = self.clock()

        try:
            await self.ensure_configured(user_id)
        except ConfigurationError as e:
            logger.warning(f"Sync for user {user_id} not configured: {e}")
            return SyncResult(success=False, status="not_configured", message=str(e))

        held = await self.lock.peek()
        if held is not None:
            logger.info(f"Sync for user {user_id} rejected, lock held for {held.age_s:.0f}s")
            return self._busy(held)

        if not options.force_refresh and await self._is_fresh(user_id):
            logger.info(f"Sync for user {user_id} skipped, data is fresh")
            return SyncResult(success=True, status="skipped", skipped=True, message="Data is already up to date")

        lease = await self.lock.acquire()
        if isinstance(lease, LockHeld):
            return self._busy(lease)

        safety_release: list[asyncio.Task] = []

        def _on_safety_timer() -> None:
            logger.error(
                f"Sync for user {user_id} still running near the host deadline, force-releasing its lock"
            )
            safety_release.append(asyncio.ensure_future(self.lock.release(lease)))

        timer = asyncio.get_running_loop().call_later(self.settings.safety_timer_delay_s, _on_safety_timer)
        try:
            await self._set_status(user_id, "fetching", 10, "Fetching new newsletters")
            await self._emit(user_id, "status", "fetching", "Fetching new newsletters", progress=10)

            emails_fetched, queued, rate_limited = await self._fetch_new_emails(user_id, options)
            return await self.loop.run(
                user_id,
                queued=queued,
                rate_limited=rate_limited,
                run_started_at=run_started_at,
                emails_fetched=emails_fetched,
            )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.exception(f"Sync for user {user_id} failed")
            await self._set_status(user_id, "error", 0, f"Sync failed: {message}")
            await self._emit(user_id, EVENT_ERROR, "error", f"Sync failed: {message}")
            return SyncResult(success=False, status="error", message=message, errors=[message])
        finally:
            timer.cancel()
            await self._release(lease, safety_release)

    async def _release(self, lease: Lease, safety_release: list[asyncio.Task]) -> None:
        try:
            if safety_release:
                await safety_release[0]
            else:
                await self.lock.release(lease)
        except Exception:
            # The lease still expires after its TTL
            logger.exception("Failed to release sync lock")

    async def _fetch_new_emails(self, user_id: int, options: SyncOptions) -> tuple[int, int, bool]:
        """Returns (fetched, newly queued, rate_limited). Retryable source failures switch to backlog-only."""
        now = self.now()
        since = now - timedelta(days=options.days_back)
        async with self.session_factory() as db:
            latest = await latest_email_received_at(db, user_id)
        if latest is not None:
            since = max(since, latest - timedelta(minutes=self.settings.fetch_overlap_minutes))

        try:
            emails = await asyncio.wait_for(
                self.source.fetch_since(since, user_id=user_id),
                timeout=self.settings.fetch_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Source fetch for user {user_id} exceeded {self.settings.fetch_timeout_s:.0f}s, processing backlog only"
            )
            return 0, 0, True
        except SourceError as e:
            if not e.retryable:
                raise
            logger.warning(f"Source fetch for user {user_id} hit {e.kind.value} ({e}), processing backlog only")
            return 0, 0, True

        queued = 0
        async with self.session_factory() as db:
            for email in emails:
                if not email.external_id:
                    continue
                if await insert_email_if_absent(db, user_id, email):
                    queued += 1
            await db.commit()
        logger.info(f"Fetched {len(emails)} emails for user {user_id}, {queued} new queued for extraction")
        return len(emails), queued, False

    async def run_batch(self, user_id: int, options: Optional[BatchOptions] = None) -> BatchResult:
        """
        Drain one batch of the backlog without fetching from the source.

        Takes no lease; the pending -> processing transition keeps it from
        double-processing alongside a sync. While a sync holds the lease, that
        sync owns PipelineStatus and the terminal event, so they are left alone.
        """
        options = options or BatchOptions()
        batch_size = max(1, min(options.batch_size, self.settings.runner_max_batch_size))
        max_time_s = min(options.max_processing_time_s, self.settings.continuation_deadline_s)
        owns_status = await self.lock.peek() is None
        if owns_status:
            await self._set_status(user_id, "extracting", 20, "Processing pending emails")
        else:
            logger.info(f"Backlog batch for user {user_id} runs beside an active sync, leaving its status alone")
        try:
            result = await self.runner.run(user_id, batch_size, max_time_s)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.exception(f"Backlog batch for user {user_id} failed")
            if owns_status:
                await self._set_status(user_id, "error", 0, f"Processing failed: {message}")
                await self._emit(user_id, EVENT_ERROR, "error", f"Processing failed: {message}")
            return BatchResult(success=False, errors=[message])

        if not owns_status:
            return result
        if result.remaining > 0:
            message = f"Processed {result.processed} emails, {result.remaining} remaining"
        else:
            message = f"Processed {result.processed} emails, backlog empty"
        await self._set_status(
            user_id,
            "complete",
            100,
            message,
            PipelineStats(
                companies_extracted=result.companies_extracted,
                new_companies=result.new_companies,
                failed=result.failed,
            ),
        )
        return result

    async def _set_status(
        self,
        user_id: int,
        state: str,
        progress: int,
        message: str,
        stats: Optional[PipelineStats] = None,
    ) -> None:
        previous = await self.status_store.get(user_id)
        await self.status_store.set(
            user_id,
            PipelineStatus(
                status=state,
                progress=progress,
                message=message,
                last_sync=previous.last_sync,
                stats=stats or PipelineStats(),
            ),
        )

    async def _emit(
        self, user_id: int, event_type: str, status: str, message: str, progress: Optional[int] = None
    ) -> None:
        event = ProgressEvent(type=event_type, status=status, message=message, progress=progress)
        await publish_safely(self.publisher, user_id, event, self.settings.progress_publish_timeout_s)


def build_coordinator(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    publisher: Optional[ProgressPublisher] = None,
) -> SyncCoordinator:
    """
    Production wiring: Gmail source, OpenAI extractor, Redis status and events, DB lease.

    Worker processes that run each task in a fresh event loop pass their own session_factory.
    """
    from ..database import AsyncSessionLocal
    from ..pipeline_status import RedisPipelineStatusStore
    from ..progress import RedisProgressPublisher
    from .extractor import OpenAIExtractor
    from .source_connector import GmailConnector

    settings = settings or default_settings
    session_factory = session_factory or AsyncSessionLocal
    return SyncCoordinator(
        session_factory=session_factory,
        source=GmailConnector(),
        extractor=OpenAIExtractor(),
        publisher=publisher or RedisProgressPublisher(settings.redis_url),
        status_store=RedisPipelineStatusStore(settings.redis_url),
        lock_manager=SyncLockManager(session_factory, ttl_s=settings.sync_lock_ttl_s),
        settings=settings,
    )
