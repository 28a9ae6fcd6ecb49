"""Tests for the instance supervisor.

Tests: stale-runner restart, idempotent replays, breaker confirmation by
a fresh heartbeat, LIVE kill after repeated failed restarts, blocking for
lower stages, stuck-job handling, auto-start account resolution, lock
contention.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from botfleet.shell.activity import ActivityLogger
from botfleet.shell.clock import to_db
from botfleet.shell.config import Config, SupervisorConfig
from botfleet.shell.contract import JobType
from botfleet.shell.database import Database
from botfleet.shell.locks import DistributedLock
from botfleet.shell.storage import Storage
from botfleet.supervision.instance_supervisor import InstanceSupervisor
from botfleet.supervision.state import FleetState


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


def _supervisor(db, clock, launcher=None, **config):
    storage = Storage(db, clock)
    state = FleetState.from_config(Config(), clock=clock)
    notifier = AsyncMock()
    supervisor = InstanceSupervisor(
        storage, DistributedLock(db, clock), state, ActivityLogger(db, clock), notifier,
        SupervisorConfig(**config), launcher=launcher, clock=clock,
    )
    return storage, state, notifier, supervisor


async def _running_bot(storage, clock, bot_id="b1", stage="PAPER"):
    await storage.create_bot(bot_id, bot_id.upper(), stage=stage, is_trading_enabled=1,
                             default_account_id="acct")
    return await storage.create_instance(bot_id, status="RUNNING", account_id="acct",
                                         last_heartbeat_at=to_db(clock.now))


@pytest.mark.asyncio
async def test_stale_runner_is_restarted_once():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, state, _, supervisor = _supervisor(db, clock, auto_start=False)
        await _running_bot(storage, clock)
        job_id = await storage.create_job("b1", JobType.BACKTESTER.value)
        await storage.claim_next_job([JobType.BACKTESTER.value], "n")

        clock.advance(minutes=3)
        report = await supervisor.check()
        assert report.checked == 1
        assert report.restarted == 0

        clock.advance(seconds=1)
        report = await supervisor.check()
        assert report.restarted == 1
        instances = await storage.get_instances("b1")
        assert [i["status"] for i in instances] == ["STOPPED", "PENDING"]
        assert instances[0]["stop_reason"] == "supervisor:stale_heartbeat"
        job = await storage.get_job(job_id)
        assert job["status"] == "FAILED"
        assert job["status_reason_code"] == "TERMINATED_BY_SUPERVISOR"
        assert state.instance_breakers.is_awaiting_confirmation("bot:b1")

        # Replaying the tick changes nothing
        report = await supervisor.check()
        assert report.restarted == 0
        assert [i["status"] for i in await storage.get_instances("b1")] == ["STOPPED", "PENDING"]
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_non_runner_instances_use_job_threshold():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, _, supervisor = _supervisor(db, clock, auto_start=False)
        await storage.create_bot("b1", "B1", stage="PAPER", is_trading_enabled=1)
        await storage.create_instance("b1", status="RUNNING", job_type="BACKTESTER",
                                      last_heartbeat_at=to_db(clock.now))

        clock.advance(minutes=10)
        assert (await supervisor.check()).restarted == 0
        clock.advance(minutes=21)
        assert (await supervisor.check()).restarted == 1
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_fresh_heartbeat_confirms_restart():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, state, _, supervisor = _supervisor(db, clock)
        await _running_bot(storage, clock)

        clock.advance(minutes=4)
        report = await supervisor.check()
        assert report.restarted == 1
        assert report.auto_started == 1
        new = (await storage.get_instances("b1", status="RUNNING"))[0]
        assert new["last_heartbeat_at"] is None

        # Restarted and running is not enough; only a heartbeat closes the loop
        clock.advance(minutes=1)
        assert (await supervisor.check()).confirmed == 0
        assert state.instance_breakers.is_awaiting_confirmation("bot:b1")

        await storage.heartbeat_instance(new["id"])
        report = await supervisor.check()
        assert report.confirmed == 1
        assert not state.instance_breakers.is_awaiting_confirmation("bot:b1")
        assert state.instance_breakers.get("bot:b1").failures == 0
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_live_bot_killed_after_repeated_failed_restarts():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, state, notifier, supervisor = _supervisor(db, clock)
        await _running_bot(storage, clock, stage="LIVE")

        # Three restarts that never produce a heartbeat
        for _ in range(3):
            clock.advance(minutes=4)
            report = await supervisor.check()
            assert report.restarted == 1
            assert report.killed == 0

        clock.advance(minutes=4)
        report = await supervisor.check()
        assert report.killed == 1
        assert report.restarted == 0

        bot = await storage.get_bot("b1")
        assert bot["killed_at"] is not None
        assert bot["is_trading_enabled"] == 0
        rows = await db.fetchall("SELECT reason_code, actor FROM kill_events WHERE bot_id = 'b1'")
        assert rows == [{"reason_code": "LIVE_INSTANCE_UNRECOVERABLE", "actor": "supervisor"}]
        notifier.bot_killed.assert_awaited_once()
        assert await storage.get_instances("b1", status="RUNNING") == []

        # Replays never record a second kill
        clock.advance(minutes=4)
        report = await supervisor.check()
        assert report.killed == 0
        assert await storage.count_kill_events("b1") == 1
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_open_breaker_blocks_non_live_restart():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, state, notifier, supervisor = _supervisor(db, clock)
        await _running_bot(storage, clock, stage="SHADOW")

        for _ in range(3):
            clock.advance(minutes=4)
            await supervisor.check()

        clock.advance(minutes=4)
        report = await supervisor.check()
        assert report.blocked == 1
        assert report.killed == 0
        assert state.instance_breakers.is_open("bot:b1")
        assert (await storage.get_bot("b1"))["killed_at"] is None
        notifier.bot_killed.assert_not_awaited()

        # Still blocked on the next tick while the breaker is open
        clock.advance(minutes=1)
        assert (await supervisor.check()).blocked == 1

        # After the cooldown one trial restart is allowed
        clock.advance(minutes=15)
        assert (await supervisor.check()).restarted == 1
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_stuck_job_on_live_bot_kills_it():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, notifier, supervisor = _supervisor(db, clock, auto_start=False)
        await storage.create_bot("live", "Live", stage="LIVE")
        await storage.create_bot("paper", "Paper", stage="PAPER")
        live_job = await storage.create_job("live", JobType.HEALTH_CHECK.value)
        paper_job = await storage.create_job("paper", JobType.HEALTH_CHECK.value)
        await storage.claim_next_job([JobType.HEALTH_CHECK.value], "n")
        await storage.claim_next_job([JobType.HEALTH_CHECK.value], "n")

        clock.advance(minutes=90)
        assert (await supervisor.check()).stuck_jobs_failed == 0

        clock.advance(minutes=1)
        report = await supervisor.check()
        assert report.stuck_jobs_failed == 2
        assert report.killed == 1
        for job_id in (live_job, paper_job):
            job = await storage.get_job(job_id)
            assert job["status"] == "FAILED"
            assert job["status_reason_code"] == "STUCK_JOB"
        assert (await storage.get_bot("live"))["killed_at"] is not None
        assert (await storage.get_bot("paper"))["killed_at"] is None
        rows = await db.fetchall("SELECT reason_code FROM kill_events")
        assert rows == [{"reason_code": "LIVE_STUCK_JOB"}]
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_auto_start_account_resolution():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        launcher = AsyncMock()
        storage, _, _, supervisor = _supervisor(db, clock, launcher=launcher, paper_account_id="paper-acct")
        await storage.create_bot("live", "Live", stage="LIVE", is_trading_enabled=1)
        await storage.create_bot("paper", "Paper", stage="PAPER", is_trading_enabled=1)
        await storage.create_bot("trial", "Trial", stage="TRIALS", is_trading_enabled=1)
        await storage.create_bot("off", "Off", stage="SHADOW")

        report = await supervisor.check()
        assert report.auto_started == 1
        running = await storage.get_instances("paper", status="RUNNING")
        assert len(running) == 1
        assert running[0]["account_id"] == "paper-acct"
        # LIVE never falls back to the shared paper account
        assert await storage.get_instances("live") == []
        assert await storage.get_instances("trial") == []
        assert await storage.get_instances("off") == []
        launcher.start.assert_awaited_once()

        assert (await supervisor.check()).auto_started == 0
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_launch_failure_counts_against_breaker():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        launcher = AsyncMock()
        launcher.start.side_effect = RuntimeError("spawn failed")
        storage, state, _, supervisor = _supervisor(db, clock, launcher=launcher)
        await storage.create_bot("b1", "B1", stage="PAPER", is_trading_enabled=1, default_account_id="acct")

        report = await supervisor.check()
        assert report.auto_started == 1
        assert state.instance_breakers.get("bot:b1").failures == 1
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_restart_skipped_while_lock_held():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, _, supervisor = _supervisor(db, clock, auto_start=False)
        await _running_bot(storage, clock)
        other = DistributedLock(db, clock)
        held = await other.acquire("instance:b1", ttl_seconds=600)
        assert held.acquired

        clock.advance(minutes=4)
        assert (await supervisor.check()).restarted == 0
        assert len(await storage.get_instances("b1", status="RUNNING")) == 1

        await other.release("instance:b1", held.lock_id)
        assert (await supervisor.check()).restarted == 1
        await db.close()
    finally:
        os.unlink(db_path)
