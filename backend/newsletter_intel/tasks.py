"""Celery tasks: full pipeline sync and backlog drain.

Each task runs the async coordinator in its own event loop with its own engine,
so pooled connections never cross loops.
"""
import asyncio
import logging
from typing import Optional

from celery import shared_task

from .config import settings
from .database import create_engine_for, session_factory_for
from .schemas import BatchOptions, SyncOptions
from .services.sync_coordinator import build_coordinator

logger = logging.getLogger(__name__)


async def _run_sync(user_id: int, force_refresh: bool, days_back: int) -> dict:
    engine = create_engine_for(settings.database_url)
    try:
        coordinator = build_coordinator(session_factory=session_factory_for(engine))
        result = await coordinator.run_sync(
            user_id, SyncOptions(force_refresh=force_refresh, days_back=days_back)
        )
        return result.model_dump(mode="json")
    finally:
        await engine.dispose()


async def _drain_backlog(user_id: int, batch_size: int, max_processing_time_s: float) -> dict:
    engine = create_engine_for(settings.database_url)
    try:
        coordinator = build_coordinator(session_factory=session_factory_for(engine))
        result = await coordinator.run_batch(
            user_id, BatchOptions(batch_size=batch_size, max_processing_time_s=max_processing_time_s)
        )
        return result.model_dump(mode="json")
    finally:
        await engine.dispose()


@shared_task(bind=True, name="newsletter_intel.tasks.run_pipeline_sync")
def run_pipeline_sync(
    self,
    user_id: Optional[int] = None,
    force_refresh: bool = False,
    days_back: Optional[int] = None,
):
    """Fetch new newsletters for a user and drain the extraction backlog."""
    if user_id is None:
        raise ValueError("user_id is required for pipeline sync tasks")
    result = asyncio.run(_run_sync(user_id, force_refresh, days_back or settings.default_days_back))
    logger.info(f"Pipeline sync task for user {user_id} finished: {result['status']}")
    return result


@shared_task(bind=True, name="newsletter_intel.tasks.drain_backlog")
def drain_backlog(
    self,
    user_id: Optional[int] = None,
    batch_size: int = 20,
    max_processing_time_s: Optional[float] = None,
):
    """Process pending emails without a Gmail fetch (periodic via beat)."""
    if user_id is None:
        raise ValueError("user_id is required for backlog drain tasks")
    budget = max_processing_time_s or settings.host_max_duration_s - settings.continuation_safety_margin_s
    result = asyncio.run(_drain_backlog(user_id, batch_size, budget))
    logger.info(
        f"Backlog drain for user {user_id}: processed={result['processed']} remaining={result['remaining']}"
    )
    return result
