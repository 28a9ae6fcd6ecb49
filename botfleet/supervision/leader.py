"""Leader election — exactly one process runs the supervised workers.

``SingleInstanceLeader`` is the default for single-process deployments.
``LeaseLeaderElector`` keeps a TTL lease row with a monotonic epoch in
the shared database; losing the lease stops every worker before the
renewal call returns.
"""

from __future__ import annotations

import inspect
from datetime import datetime, timedelta
from typing import Awaitable, Callable

import aiosqlite
import structlog

from botfleet.shell.clock import Clock, from_db, to_db, utcnow
from botfleet.shell.database import Database

log = structlog.get_logger()


class LeaderElector:
    """Interface shared by both electors."""

    async def try_acquire(self) -> bool:
        raise NotImplementedError

    async def release(self) -> None:
        raise NotImplementedError

    def is_leader(self) -> bool:
        raise NotImplementedError

    @property
    def epoch(self) -> int:
        return 0

    def snapshot(self) -> dict:
        return {"is_leader": self.is_leader(), "epoch": self.epoch}


class SingleInstanceLeader(LeaderElector):
    """Always the leader. Only safe when one engine process runs against the database."""

    async def try_acquire(self) -> bool:
        return True

    async def release(self) -> None:
        return None

    def is_leader(self) -> bool:
        return True

    def snapshot(self) -> dict:
        return {"is_leader": True, "epoch": 0, "mode": "single"}


class LeaseLeaderElector(LeaderElector):
    def __init__(
        self,
        db: Database,
        node_id: str,
        ttl_seconds: int = 30,
        clock: Clock = utcnow,
        name: str = "fleet",
        on_elected: Callable[[], Awaitable[None] | None] | None = None,
        on_revoked: Callable[[], None] | None = None,
    ) -> None:
        self._db = db
        self._node_id = node_id
        self._ttl = ttl_seconds
        self._clock = clock
        self._name = name
        self._leader = False
        self._epoch = 0
        self._expires_at: datetime | None = None
        self.on_elected = on_elected
        self.on_revoked = on_revoked

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def epoch(self) -> int:
        return self._epoch

    def is_leader(self) -> bool:
        # A lease we could not renew lapses locally even if no one took it yet
        return self._leader and self._expires_at is not None and self._expires_at > self._clock()

    async def _acquire_or_renew(self) -> bool:
        now = self._clock()
        expires = now + timedelta(seconds=self._ttl)
        async with self._db.transaction() as tx:
            row = await tx.fetchone("SELECT * FROM leader_lease WHERE name = ?", (self._name,))
            if row is None:
                epoch = 1
                await tx.execute(
                    "INSERT INTO leader_lease (name, holder, epoch, acquired_at, expires_at) VALUES (?, ?, ?, ?, ?)",
                    (self._name, self._node_id, epoch, to_db(now), to_db(expires)),
                )
            elif row["holder"] == self._node_id and row["epoch"] == self._epoch and from_db(row["expires_at"]) > now:
                epoch = row["epoch"]
                await tx.execute(
                    "UPDATE leader_lease SET expires_at = ? WHERE name = ? AND holder = ? AND epoch = ?",
                    (to_db(expires), self._name, self._node_id, epoch),
                )
            elif from_db(row["expires_at"]) <= now:
                epoch = row["epoch"] + 1
                await tx.execute(
                    "UPDATE leader_lease SET holder = ?, epoch = ?, acquired_at = ?, expires_at = ? "
                    "WHERE name = ? AND epoch = ?",
                    (self._node_id, epoch, to_db(now), to_db(expires), self._name, row["epoch"]),
                )
            else:
                return False
        self._epoch = epoch
        self._expires_at = expires
        return True

    async def try_acquire(self) -> bool:
        """Acquire or renew the lease. Fires the election/revocation callbacks on change."""
        was_leader = self._leader
        try:
            held = await self._acquire_or_renew()
        except (aiosqlite.Error, OSError) as e:
            log.warning("leader.renew_failed", node_id=self._node_id, error=str(e))
            held = False

        if held and not was_leader:
            self._leader = True
            log.info("leader.elected", node_id=self._node_id, epoch=self._epoch)
            if self.on_elected:
                result = self.on_elected()
                if inspect.isawaitable(result):
                    await result
        elif not held and was_leader:
            self._revoke()
        return held

    def _revoke(self) -> None:
        self._leader = False
        self._expires_at = None
        log.warning("leader.revoked", node_id=self._node_id, epoch=self._epoch)
        if self.on_revoked:
            self.on_revoked()

    async def release(self) -> None:
        if not self._leader:
            return
        try:
            await self._db.execute(
                "DELETE FROM leader_lease WHERE name = ? AND holder = ? AND epoch = ?",
                (self._name, self._node_id, self._epoch),
            )
        except (aiosqlite.Error, OSError) as e:
            log.warning("leader.release_failed", node_id=self._node_id, error=str(e))
        self._revoke()

    def snapshot(self) -> dict:
        return {
            "is_leader": self.is_leader(),
            "epoch": self._epoch,
            "mode": "lease",
            "node_id": self._node_id,
            "expires_at": self._expires_at.isoformat() if self._expires_at else None,
        }
