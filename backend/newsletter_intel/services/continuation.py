"""
Continuation loop: drain the backlog with repeated bounded batches inside one run.

Stops when the backlog is empty, when an iteration makes no progress, or when the
run is close to the host's execution ceiling. Always leaves PipelineStatus in a
terminal state and emits exactly one terminal progress event.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from ..config import Settings, settings as default_settings
from ..pipeline_status import PipelineStats, PipelineStatus, PipelineStatusStore
from ..progress import (
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_PARTIAL,
    ProgressEvent,
    ProgressPublisher,
    publish_safely,
)
from ..schemas import SyncResult
from .batch_runner import ExtractionBatchRunner

logger = logging.getLogger(__name__)


def batch_size_for(queued: int, lo: int, hi: int) -> int:
    return max(lo, min(queued, hi))


class ContinuationLoop:
    def __init__(
        self,
        runner: ExtractionBatchRunner,
        status_store: PipelineStatusStore,
        publisher: Optional[ProgressPublisher] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.runner = runner
        self.status_store = status_store
        self.publisher = publisher
        self.settings = settings or default_settings
        self.clock = clock
        self.now = now

    async def run(
        self,
        user_id: int,
        queued: int,
        rate_limited: bool = False,
        run_started_at: Optional[float] = None,
        emails_fetched: int = 0,
    ) -> SyncResult:
        s = self.settings
        started = run_started_at if run_started_at is not None else self.clock()
        batch_size = batch_size_for(queued, s.batch_size_min, s.batch_size_max)
        budget = s.rate_limited_iteration_budget_s if rate_limited else s.iteration_budget_s
        deadline = s.continuation_deadline_s

        processed = companies = new_companies = failed = 0
        remaining = 0
        errors: list[str] = []
        iteration = 0
        stopped_early = False

        await self._set_status(
            user_id,
            "extracting",
            20,
            "Processing backlog" if rate_limited else f"Extracting companies from {queued} new emails",
            emails_fetched,
            companies,
            new_companies,
            failed,
        )

        try:
            while True:
                iteration += 1
                # Never let an iteration's budget extend past the run deadline
                iteration_budget = max(0.0, min(budget, deadline - (self.clock() - started)))
                batch = await self.runner.run(user_id, batch_size, iteration_budget)
                processed += batch.processed
                companies += batch.companies_extracted
                new_companies += batch.new_companies
                failed += batch.failed
                remaining = batch.remaining
                if batch.errors:
                    errors.extend(batch.errors)
                logger.info(
                    f"Iteration {iteration} for user {user_id}: processed={batch.processed} "
                    f"remaining={remaining} (total processed={processed})"
                )

                if remaining <= 0:
                    break
                elapsed = self.clock() - started
                if elapsed >= deadline or iteration_budget <= 0:
                    logger.info(f"Stopping after {elapsed:.1f}s to stay inside the host limit")
                    stopped_early = True
                    break
                if batch.processed == 0:
                    logger.warning(f"No progress in iteration {iteration} with {remaining} pending, stopping")
                    break

                total = processed + remaining
                await self._set_status(
                    user_id,
                    "extracting",
                    20 + int(75 * processed / total) if total else 95,
                    f"Processed {processed} emails, {remaining} remaining",
                    emails_fetched,
                    companies,
                    new_companies,
                    failed,
                )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.exception(f"Continuation loop failed for user {user_id} in iteration {iteration}")
            await self._set_status(
                user_id, "error", 0, f"Pipeline failed: {message}", emails_fetched, companies, new_companies, failed
            )
            await self._emit(user_id, EVENT_ERROR, "error", f"Pipeline failed: {message}", processed, remaining)
            return SyncResult(
                success=False,
                status="error",
                message=message,
                rate_limited=rate_limited,
                emails_fetched=emails_fetched,
                processed=processed,
                remaining=remaining,
                companies_extracted=companies,
                new_companies=new_companies,
                failed=failed,
                errors=errors + [message],
            )

        if remaining <= 0:
            outcome = EVENT_COMPLETE
            message = f"Processed {processed} emails, extracted {companies} companies"
        else:
            outcome = EVENT_PARTIAL
            reason = "time limit reached" if stopped_early else "no further progress"
            message = f"Processed {processed} emails, {remaining} remaining ({reason}). Run again to continue."

        await self._set_status(
            user_id,
            "complete",
            100,
            message,
            emails_fetched,
            companies,
            new_companies,
            failed,
            mark_synced=outcome == EVENT_COMPLETE,
        )
        await self._emit(user_id, outcome, "complete", message, processed, remaining, companies, failed)
        return SyncResult(
            success=True,
            status=outcome,
            message=message,
            rate_limited=rate_limited,
            emails_fetched=emails_fetched,
            processed=processed,
            remaining=remaining,
            companies_extracted=companies,
            new_companies=new_companies,
            failed=failed,
            errors=errors or None,
        )

    async def _set_status(
        self,
        user_id: int,
        state: str,
        progress: int,
        message: str,
        emails_fetched: int,
        companies: int,
        new_companies: int,
        failed: int,
        mark_synced: bool = False,
    ) -> None:
        previous = await self.status_store.get(user_id)
        await self.status_store.set(
            user_id,
            PipelineStatus(
                status=state,
                progress=max(0, min(100, progress)),
                message=message,
                last_sync=self.now() if mark_synced else previous.last_sync,
                stats=PipelineStats(
                    emails_fetched=emails_fetched,
                    companies_extracted=companies,
                    new_companies=new_companies,
                    failed=failed,
                ),
            ),
        )

    async def _emit(
        self,
        user_id: int,
        event_type: str,
        status: str,
        message: str,
        processed: int,
        remaining: int,
        companies: int = 0,
        failed: int = 0,
    ) -> None:
        event = ProgressEvent(
            type=event_type,
            status=status,
            message=message,
            progress=100 if status == "complete" else None,
            stats={
                "processed": processed,
                "remaining": remaining,
                "companies_extracted": companies,
                "failed": failed,
            },
        )
        await publish_safely(self.publisher, user_id, event, self.settings.progress_publish_timeout_s)
