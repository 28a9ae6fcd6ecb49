"""Tests for leader election.

Tests: single-instance leader, lease exclusivity between two nodes,
renewal, takeover after expiry with a higher epoch, revocation
callbacks, release for immediate failover.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from botfleet.shell.database import Database
from botfleet.supervision.leader import LeaseLeaderElector, SingleInstanceLeader


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now += timedelta(**kw)


async def _make_db():
    f = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    db_path = f.name
    f.close()
    db = Database(db_path)
    await db.connect()
    return db, db_path


@pytest.mark.asyncio
async def test_single_instance_is_always_leader():
    leader = SingleInstanceLeader()
    assert await leader.try_acquire()
    assert leader.is_leader()
    await leader.release()
    assert leader.snapshot()["mode"] == "single"


@pytest.mark.asyncio
async def test_lease_is_exclusive():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        a = LeaseLeaderElector(db, "node-a", ttl_seconds=30, clock=clock)
        b = LeaseLeaderElector(db, "node-b", ttl_seconds=30, clock=clock)

        assert await a.try_acquire()
        assert not await b.try_acquire()
        assert a.is_leader() and not b.is_leader()
        assert a.epoch == 1

        # Renewals keep the epoch and extend the lease
        clock.advance(seconds=20)
        assert await a.try_acquire()
        assert a.epoch == 1
        clock.advance(seconds=20)
        assert a.is_leader()
        assert not await b.try_acquire()
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_takeover_after_expiry_bumps_epoch():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        revoked = MagicMock()
        a = LeaseLeaderElector(db, "node-a", ttl_seconds=30, clock=clock, on_revoked=revoked)
        b = LeaseLeaderElector(db, "node-b", ttl_seconds=30, clock=clock)
        assert await a.try_acquire()

        # node-a stalls past its TTL: it stops claiming leadership locally
        clock.advance(seconds=31)
        assert not a.is_leader()
        assert await b.try_acquire()
        assert b.epoch == 2
        assert b.is_leader()
        assert not (a.is_leader() and b.is_leader())

        # node-a's next renewal discovers the loss and fires the callback
        assert not await a.try_acquire()
        revoked.assert_called_once()
        assert not a.is_leader()

        row = await db.fetchone("SELECT holder, epoch FROM leader_lease WHERE name = 'fleet'")
        assert row == {"holder": "node-b", "epoch": 2}
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_stale_holder_cannot_renew_with_old_epoch():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        a = LeaseLeaderElector(db, "node-a", ttl_seconds=30, clock=clock)
        assert await a.try_acquire()
        clock.advance(seconds=31)
        # The same node re-acquiring after expiry gets a new epoch
        assert await a.try_acquire()
        assert a.epoch == 2
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_election_callbacks_and_release():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        elected = []

        async def on_elected():
            elected.append("a")

        revoked = MagicMock()
        a = LeaseLeaderElector(db, "node-a", ttl_seconds=30, clock=clock,
                               on_elected=on_elected, on_revoked=revoked)
        b = LeaseLeaderElector(db, "node-b", ttl_seconds=30, clock=clock)

        await a.try_acquire()
        await a.try_acquire()
        assert elected == ["a"]

        await a.release()
        revoked.assert_called_once()
        assert not a.is_leader()
        # No wait for the TTL: the standby takes over immediately
        assert await b.try_acquire()
        assert b.snapshot()["node_id"] == "node-b"
        await db.close()
    finally:
        os.unlink(db_path)
