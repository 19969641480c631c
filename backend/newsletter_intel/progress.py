"""
Progress events for live pipeline updates.

Publishing is fire-and-forget: the pipeline calls publish_safely(), which bounds
the wait and swallows every failure. Nothing in the pipeline depends on an
event being delivered.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Terminal event types; exactly one per coordinator run
EVENT_COMPLETE = "complete"
EVENT_PARTIAL = "partial_completion"
EVENT_ERROR = "error"


class ProgressEvent(BaseModel):
    type: str
    status: str
    message: str = ""
    progress: Optional[int] = None
    stats: dict[str, Any] = {}
    data: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ProgressPublisher(Protocol):
    async def publish(self, user_id: int, event: ProgressEvent) -> None: ...


class LoggingProgressPublisher:
    """Sink for CLI runs and tests: events go to the log only."""

    async def publish(self, user_id: int, event: ProgressEvent) -> None:
        logger.info(f"[progress user={user_id}] {event.type}/{event.status}: {event.message}")


def events_channel(user_id: int) -> str:
    return f"pipeline:events:{user_id}"


class RedisProgressPublisher:
    """Publishes JSON events on pipeline:events:{user_id} (relayed to the browser over SSE)."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis_asyncio

            self._client = redis_asyncio.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._client

    async def publish(self, user_id: int, event: ProgressEvent) -> None:
        await self._get_client().publish(events_channel(user_id), event.model_dump_json())


async def publish_safely(
    publisher: Optional[ProgressPublisher],
    user_id: int,
    event: ProgressEvent,
    timeout_s: float = 2.0,
) -> bool:
    """Best-effort publish. Returns whether the sink accepted the event."""
    if publisher is None:
        return False
    try:
        await asyncio.wait_for(publisher.publish(user_id, event), timeout=timeout_s)
        return True
    except Exception as e:
        logger.debug(f"Dropped progress event {event.type} for user {user_id}: {e}")
        return False
