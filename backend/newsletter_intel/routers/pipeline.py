"""Pipeline API: sync, backlog drain, status, admin unlock, SSE progress events."""
import asyncio
import json
import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from ..auth import get_current_user_required, get_current_user_for_sse
from ..config import settings
from ..models import User
from ..progress import EVENT_COMPLETE, EVENT_ERROR, EVENT_PARTIAL, events_channel
from ..schemas import BatchOptions, BatchResult, SyncOptions
from ..services.sync_coordinator import SyncCoordinator, build_coordinator
from ..store import count_pending_emails

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])

TERMINAL_EVENTS = (EVENT_COMPLETE, EVENT_PARTIAL, EVENT_ERROR)
SYNC_STATUS_CODES = {
    "complete": 200,
    "partial_completion": 200,
    "skipped": 200,
    "busy": 429,
    "not_configured": 400,
    "error": 500,
}


@lru_cache(maxsize=1)
def get_coordinator() -> SyncCoordinator:
    return build_coordinator()


@router.post("/sync")
async def sync(
    options: Optional[SyncOptions] = None,
    current_user: User = Depends(get_current_user_required),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Fetch new newsletters and extract companies. 429 + Retry-After when another sync holds the lock."""
    result = await coordinator.run_sync(current_user.id, options)
    headers = None
    if result.status == "busy" and result.retry_after_s is not None:
        headers = {"Retry-After": str(max(1, int(round(result.retry_after_s))))}
    return JSONResponse(
        status_code=SYNC_STATUS_CODES.get(result.status, 200),
        content=result.model_dump(mode="json"),
        headers=headers,
    )


@router.post("/process-background", response_model=BatchResult)
async def process_background(
    options: Optional[BatchOptions] = None,
    current_user: User = Depends(get_current_user_required),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Drain one batch of pending emails without fetching from Gmail."""
    return await coordinator.run_batch(current_user.id, options)


@router.get("/status")
async def pipeline_status(
    current_user: User = Depends(get_current_user_required),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Current pipeline status for this user, pending backlog size and sync lock state."""
    status = await coordinator.get_status(current_user.id)
    async with coordinator.session_factory() as db:
        pending = await count_pending_emails(db, current_user.id)
    held = await coordinator.lock.peek()
    return {
        **status.model_dump(mode="json"),
        "pending_emails": pending,
        "lock": {
            "held": held is not None,
            "age_s": held.age_s if held else None,
            "retry_after_s": held.retry_after_s if held else None,
        },
    }


@router.post("/unlock")
async def unlock(
    current_user: User = Depends(get_current_user_required),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Force-release a stuck sync lock."""
    released = await coordinator.lock.force_release()
    logger.warning(f"User {current_user.id} requested sync unlock (released={released})")
    return {"released": released}


async def _poll_status_events(coordinator: SyncCoordinator, user_id: int, request: Request):
    """Fallback when Redis pub/sub is unavailable: stream status snapshots until terminal."""
    while not await request.is_disconnected():
        status = await coordinator.get_status(user_id)
        yield {"event": "status", "data": status.model_dump_json()}
        if status.status in ("idle", "complete", "error"):
            break
        await asyncio.sleep(0.5)


async def _sse_generator(coordinator: SyncCoordinator, user_id: int, request: Request):
    """Relay this user's progress channel until a terminal event arrives or the client leaves."""
    import redis.asyncio as redis_asyncio

    client = redis_asyncio.from_url(settings.redis_url, decode_responses=True, socket_connect_timeout=2)
    pubsub = client.pubsub()
    try:
        await pubsub.subscribe(events_channel(user_id))
    except Exception as e:
        logger.warning(f"Redis pub/sub unavailable ({e}), streaming status snapshots instead")
        await client.aclose()
        async for event in _poll_status_events(coordinator, user_id, request):
            yield event
        return

    try:
        while not await request.is_disconnected():
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if not message:
                continue
            data = message.get("data")
            try:
                event_type = json.loads(data).get("type", "message")
            except (TypeError, ValueError):
                event_type = "message"
            yield {"event": event_type, "data": data}
            if event_type in TERMINAL_EVENTS:
                break
    finally:
        await pubsub.unsubscribe(events_channel(user_id))
        await pubsub.aclose()
        await client.aclose()


@router.get("/events")
async def pipeline_events(
    request: Request,
    current_user: User = Depends(get_current_user_for_sse),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """SSE stream of pipeline progress. Pass ?token=JWT when using EventSource."""
    return EventSourceResponse(_sse_generator(coordinator, current_user.id, request))
