"""Pipeline sync lock as an explicit lease over a singleton DB row.

acquire() -> Lease | LockHeld; release/renew take the Lease handle. A row older
than its TTL belongs to a crashed or hung run and is cleared by whoever tries
to acquire next. Two acquirers racing on an empty table are serialized by the
primary key: the loser sees IntegrityError and reports LockHeld.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import SyncLock

logger = logging.getLogger(__name__)

SYNC_LOCK_NAME = "pipeline:sync:lock"


@dataclass(frozen=True)
class Lease:
    token: str
    acquired_at: datetime
    ttl: timedelta

    def age(self, now: datetime) -> timedelta:
        return now - self.acquired_at

    def is_stale(self, now: datetime) -> bool:
        return self.age(now) > self.ttl


@dataclass(frozen=True)
class LockHeld:
    """Another run holds a live lease."""

    age_s: float
    retry_after_s: float


class SyncLockManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_s: float,
        clock: Callable[[], datetime] = datetime.utcnow,
        name: str = SYNC_LOCK_NAME,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_s)
        self.clock = clock
        self.name = name

    def _lease_from_row(self, row: SyncLock) -> Lease:
        return Lease(token=row.holder, acquired_at=row.acquired_at, ttl=timedelta(seconds=row.ttl_seconds))

    def _held(self, lease: Lease, now: datetime) -> LockHeld:
        age = max(0.0, lease.age(now).total_seconds())
        return LockHeld(age_s=age, retry_after_s=max(0.0, lease.ttl.total_seconds() - age))

    async def _current(self, db: AsyncSession) -> Optional[Lease]:
        result = await db.execute(select(SyncLock).where(SyncLock.name == self.name))
        row = result.scalars().first()
        return self._lease_from_row(row) if row else None

    async def peek(self) -> Optional[LockHeld]:
        """LockHeld when a live lease exists; clears a stale one and returns None."""
        now = self.clock()
        async with self.session_factory() as db:
            lease = await self._current(db)
            if lease is None:
                return None
            if lease.is_stale(now):
                await self._clear_stale(db, lease, now)
                return None
            return self._held(lease, now)

    async def _clear_stale(self, db: AsyncSession, lease: Lease, now: datetime) -> None:
        logger.warning(
            f"Stale sync lock detected (age {lease.age(now).total_seconds():.0f}s > ttl "
            f"{lease.ttl.total_seconds():.0f}s), clearing it"
        )
        await db.execute(delete(SyncLock).where(SyncLock.name == self.name, SyncLock.holder == lease.token))
        await db.commit()

    async def acquire(self) -> Union[Lease, LockHeld]:
        now = self.clock()
        async with self.session_factory() as db:
            existing = await self._current(db)
            if existing is not None:
                if not existing.is_stale(now):
                    return self._held(existing, now)
                await self._clear_stale(db, existing, now)

            lease = Lease(token=secrets.token_hex(16), acquired_at=now, ttl=self.ttl)
            db.add(
                SyncLock(
                    name=self.name,
                    holder=lease.token,
                    acquired_at=lease.acquired_at,
                    ttl_seconds=int(self.ttl.total_seconds()),
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                winner = await self._current(db)
                logger.info("Sync lock acquisition lost a race to another run")
                if winner is None:
                    return LockHeld(age_s=0.0, retry_after_s=self.ttl.total_seconds())
                return self._held(winner, self.clock())
            logger.info(f"Sync lock acquired (holder={lease.token[:8]})")
            return lease

    async def renew(self, lease: Lease) -> Optional[Lease]:
        """Push acquired_at forward. None when the lease was lost (cleared as stale or force-released)."""
        now = self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncLock)
                .where(SyncLock.name == self.name, SyncLock.holder == lease.token)
                .values(acquired_at=now)
            )
            await db.commit()
            if not result.rowcount:
                return None
            return Lease(token=lease.token, acquired_at=now, ttl=lease.ttl)

    async def release(self, lease: Lease) -> bool:
        """Delete the row only if this lease still owns it."""
        async with self.session_factory() as db:
            result = await db.execute(
                delete(SyncLock).where(SyncLock.name == self.name, SyncLock.holder == lease.token)
            )
            await db.commit()
            released = bool(result.rowcount)
        if released:
            logger.info(f"Sync lock released (holder={lease.token[:8]})")
        else:
            logger.warning(f"Sync lock already gone at release (holder={lease.token[:8]})")
        return released

    async def force_release(self) -> bool:
        """Admin unlock: drop whatever lease exists."""
        async with self.session_factory() as db:
            result = await db.execute(delete(SyncLock).where(SyncLock.name == self.name))
            await db.commit()
            cleared = bool(result.rowcount)
        if cleared:
            logger.warning("Sync lock force-released")
        return cleared
