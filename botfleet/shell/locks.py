"""Named TTL locks shared by every process on the fleet database.

A lock is a row in ``distributed_locks``; it expires on its own so a
crashed holder never wedges a resource. When the lock table cannot be
reached the result is ``degraded`` and callers may proceed, relying on
the conditional SQL of the operation they guard.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncIterator

import aiosqlite
import structlog

from botfleet.shell.clock import Clock, to_db, utcnow
from botfleet.shell.database import Database

log = structlog.get_logger()


@dataclass
class LockResult:
    acquired: bool
    degraded: bool = False
    lock_id: str | None = None

    @property
    def may_proceed(self) -> bool:
        return self.acquired or self.degraded


class DistributedLock:
    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self._db = db
        self._clock = clock

    async def acquire(self, key: str, ttl_seconds: int = 60) -> LockResult:
        now = self._clock()
        lock_id = uuid.uuid4().hex
        try:
            async with self._db.transaction() as tx:
                row = await tx.fetchone(
                    "SELECT lock_id, expires_at FROM distributed_locks WHERE lock_key = ?", (key,)
                )
                if row and row["expires_at"] > to_db(now):
                    return LockResult(acquired=False)
                await tx.execute(
                    "INSERT OR REPLACE INTO distributed_locks (lock_key, lock_id, expires_at, acquired_at) "
                    "VALUES (?, ?, ?, ?)",
                    (key, lock_id, to_db(now + timedelta(seconds=ttl_seconds)), to_db(now)),
                )
        except (aiosqlite.Error, OSError) as e:
            log.warning("lock.degraded", key=key, error=str(e))
            return LockResult(acquired=False, degraded=True)
        return LockResult(acquired=True, lock_id=lock_id)

    async def release(self, key: str, lock_id: str | None) -> bool:
        """Release only if ``lock_id`` still owns the key."""
        if not lock_id:
            return False
        try:
            cursor = await self._db.execute(
                "DELETE FROM distributed_locks WHERE lock_key = ? AND lock_id = ?", (key, lock_id)
            )
        except (aiosqlite.Error, OSError) as e:
            log.warning("lock.release_failed", key=key, error=str(e))
            return False
        return cursor.rowcount > 0

    @asynccontextmanager
    async def hold(self, key: str, ttl_seconds: int = 60) -> AsyncIterator[LockResult]:
        """Acquire for the duration of the block. Check ``may_proceed`` before acting."""
        result = await self.acquire(key, ttl_seconds)
        try:
            yield result
        finally:
            if result.acquired:
                await self.release(key, result.lock_id)
