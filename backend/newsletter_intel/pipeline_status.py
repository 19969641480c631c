"""Pipeline status per user (read by GET /api/pipeline/status).

The coordinator owns a store instance and overwrites the whole status on every
state change. Two stores: in-process memory, and Redis so every API worker and
Celery process sees the same status. The Redis store keeps a memory copy and
falls back to it when Redis is unavailable; status is advisory, never required
for correctness.
"""
import json
import logging
import threading
from datetime import datetime
from typing import Literal, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

PipelineState = Literal["idle", "fetching", "extracting", "complete", "error"]


class PipelineStats(BaseModel):
    emails_fetched: int = 0
    companies_extracted: int = 0
    new_companies: int = 0
    failed: int = 0


class PipelineStatus(BaseModel):
    status: PipelineState = "idle"
    progress: int = 0
    message: str = ""
    last_sync: Optional[datetime] = None
    stats: PipelineStats = Field(default_factory=PipelineStats)


class PipelineStatusStore(Protocol):
    async def get(self, user_id: int) -> PipelineStatus: ...

    async def set(self, user_id: int, status: PipelineStatus) -> None: ...


class InMemoryPipelineStatusStore:
    def __init__(self):
        self._state_by_user: dict[int, PipelineStatus] = {}
        self._lock = threading.Lock()

    async def get(self, user_id: int) -> PipelineStatus:
        with self._lock:
            state = self._state_by_user.get(user_id)
            return state.model_copy(deep=True) if state else PipelineStatus()

    async def set(self, user_id: int, status: PipelineStatus) -> None:
        with self._lock:
            self._state_by_user[user_id] = status.model_copy(deep=True)


class RedisPipelineStatusStore:
    """JSON status under pipeline:status:{user_id}; memory copy when Redis is down."""

    def __init__(self, redis_url: str, ttl_hours: int = 24 * 7):
        self.redis_url = redis_url
        self.ttl_s = ttl_hours * 3600
        self._client = None
        self._unavailable = False
        self._fallback = InMemoryPipelineStatusStore()

    def _key(self, user_id: int) -> str:
        return f"pipeline:status:{user_id}"

    async def _get_client(self):
        if self._unavailable:
            return None
        if self._client is not None:
            return self._client
        try:
            import redis.asyncio as redis_asyncio

            client = redis_asyncio.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
            await client.ping()
            self._client = client
            logger.debug("Redis status store connected successfully")
            return client
        except Exception as e:
            logger.warning(f"Redis unavailable: {e}. Using in-memory pipeline status.")
            self._unavailable = True
            return None

    async def get(self, user_id: int) -> PipelineStatus:
        client = await self._get_client()
        if client is None:
            return await self._fallback.get(user_id)
        try:
            data = await client.get(self._key(user_id))
            if data:
                return PipelineStatus.model_validate(json.loads(data))
        except Exception as e:
            logger.debug(f"Redis status get error: {e}")
        return await self._fallback.get(user_id)

    async def set(self, user_id: int, status: PipelineStatus) -> None:
        await self._fallback.set(user_id, status)
        client = await self._get_client()
        if client is None:
            return
        try:
            await client.setex(self._key(user_id), self.ttl_s, status.model_dump_json())
        except Exception as e:
            logger.debug(f"Redis status set error: {e}")
