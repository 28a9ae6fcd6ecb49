"""Tests for the promotion state machine.

Tests: TRIALS -> PAPER promotion with audit trail, replay safety, HOLD on
failing gates, best-cell failsafe and its recency bound, CANARY
READY_FOR_LIVE and manual approval, demotion rules, stage lock and
MANUAL mode, auto-revert to the peak generation.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from botfleet.autonomy.promotion import PromotionStateMachine
from botfleet.shell.activity import ActivityLogger
from botfleet.shell.clock import to_db
from botfleet.shell.config import Config, PromotionConfig
from botfleet.shell.contract import BotMetrics, Decision
from botfleet.shell.database import Database
from botfleet.shell.storage import Storage
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


def _machine(db, clock, **config):
    storage = Storage(db, clock)
    notifier = AsyncMock()
    machine = PromotionStateMachine(
        storage, ActivityLogger(db, clock), FleetState.from_config(Config(), clock=clock), notifier,
        PromotionConfig(**config), clock,
    )
    return storage, notifier, machine


def _trials_passing(**overrides) -> BotMetrics:
    m = BotMetrics(
        total_trades=60, winners=24, losers=36, net_pnl=800.0, win_rate=40.0,
        max_drawdown_pct=10.0, profit_factor=1.3, expectancy=13.3, sharpe=0.8,
        backtest_completed=True, has_market_data_proof=True,
    )
    for key, value in overrides.items():
        setattr(m, key, value)
    return m


def _canary_passing() -> BotMetrics:
    return BotMetrics(
        total_trades=320, winners=160, losers=160, net_pnl=9000.0, win_rate=50.0,
        max_drawdown_pct=8.0, profit_factor=1.6, expectancy=30.0, sharpe=1.2,
        backtest_completed=True, has_market_data_proof=True, walk_forward_passed=True,
        walk_forward_consistency=0.7, overfit_ratio=1.5, stress_test_passed=True, trading_days=20,
    )


async def _consistent_sessions(storage, bot_id, n=3):
    for _ in range(n):
        sid = await storage.create_backtest_session(bot_id, None, 1)
        await storage.complete_backtest_session(sid, BotMetrics(net_pnl=100.0, profit_factor=1.3))


# --- Promotion ---

@pytest.mark.asyncio
async def test_trials_bot_promotes_to_paper():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, notifier, machine = _machine(db, clock)
        bot = await storage.create_bot("b1", "Bot 1", metrics=_trials_passing())
        await _consistent_sessions(storage, "b1")

        outcome = await machine.evaluate(bot, 55.0)
        assert outcome.decision == Decision.PROMOTE
        assert outcome.to_stage == "PAPER"
        assert outcome.metrics_source == "latest"
        assert outcome.applied
        assert (await storage.get_bot("b1"))["stage"] == "PAPER"

        trail = await storage.get_audit_trail("b1")
        assert len(trail) == 1
        assert trail[0]["decision"] == "PROMOTE"
        assert trail[0]["metrics_source"] == "latest"
        assert trail[0]["gates_passed"] == trail[0]["gates_total"]
        assert json.loads(trail[0]["blocker_codes"]) == []
        notifier.bot_promoted.assert_awaited_once()

        # Re-running with the stale row does not move the bot twice
        again = await machine.evaluate(bot, 55.0)
        assert not again.applied
        assert (await storage.get_bot("b1"))["stage"] == "PAPER"
        assert len(await storage.get_audit_trail("b1")) == 1
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_failing_gate_holds():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, notifier, machine = _machine(db, clock)
        bot = await storage.create_bot("b1", "Bot 1", metrics=_trials_passing(max_drawdown_pct=25.0))
        await _consistent_sessions(storage, "b1")

        outcome = await machine.evaluate(bot, 55.0)
        assert outcome.decision == Decision.HOLD
        assert outcome.gates.blockers == ["max_drawdown"]
        assert (await storage.get_bot("b1"))["stage"] == "TRIALS"
        assert await storage.get_audit_trail("b1") == []
        notifier.bot_promoted.assert_not_awaited()
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_missing_consistency_and_low_score_hold():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, machine = _machine(db, clock)
        bot = await storage.create_bot("b1", "Bot 1", metrics=_trials_passing())
        await _consistent_sessions(storage, "b1", n=2)

        outcome = await machine.evaluate(bot, 55.0)
        assert outcome.gates.blockers == ["consistency"]

        await _consistent_sessions(storage, "b1", n=1)
        outcome = await machine.evaluate(bot, 39.0)
        assert outcome.gates.blockers == ["score_threshold"]
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_hold_logging_is_suppressed_for_same_blockers():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, machine = _machine(db, clock)
        bot = await storage.create_bot("b1", "Bot 1", metrics=_trials_passing(max_drawdown_pct=25.0))
        await _consistent_sessions(storage, "b1")

        for _ in range(3):
            await machine.evaluate(bot, 55.0)
        rows = await db.fetchall("SELECT * FROM activity_log WHERE category = 'PROMOTION'")
        assert len(rows) == 1

        clock.advance(minutes=61)
        await machine.evaluate(bot, 55.0)
        rows = await db.fetchall("SELECT * FROM activity_log WHERE category = 'PROMOTION'")
        assert len(rows) == 2
        await db.close()
    finally:
        os.unlink(db_path)


# --- Failsafe ---

@pytest.mark.asyncio
async def test_best_cell_failsafe_promotes():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, machine = _machine(db, clock)
        bot = await storage.create_bot(
            "b1", "Bot 1", metrics=_trials_passing(max_drawdown_pct=25.0),
            matrix_best_cell=_trials_passing(), matrix_updated_at=to_db(clock.now - timedelta(days=30)),
        )
        await _consistent_sessions(storage, "b1")

        outcome = await machine.evaluate(bot, 55.0)
        assert outcome.decision == Decision.PROMOTE
        assert outcome.metrics_source == "best_cell"
        assert (await storage.get_audit_trail("b1"))[0]["metrics_source"] == "best_cell"
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_best_cell_recency_bound():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, machine = _machine(db, clock, best_cell_max_age_days=7)
        bot = await storage.create_bot(
            "b1", "Bot 1", metrics=_trials_passing(max_drawdown_pct=25.0),
            matrix_best_cell=_trials_passing(), matrix_updated_at=to_db(clock.now - timedelta(days=10)),
        )
        await _consistent_sessions(storage, "b1")
        assert (await machine.evaluate(bot, 55.0)).decision == Decision.HOLD

        await storage.update_bot("b1", {"matrix_updated_at": to_db(clock.now - timedelta(days=2))})
        bot = await storage.get_bot("b1")
        assert (await machine.evaluate(bot, 55.0)).decision == Decision.PROMOTE
        await db.close()
    finally:
        os.unlink(db_path)


# --- CANARY -> LIVE ---

@pytest.mark.asyncio
async def test_canary_waits_for_approval():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, notifier, machine = _machine(db, clock)
        bot = await storage.create_bot("b1", "Bot 1", stage="CANARY", metrics=_canary_passing())
        await storage.upsert_autonomy_score("b1", 75.0, "SEMI_AUTONOMOUS", {
            "data_reliability": 15, "decision_quality": 15, "risk_discipline": 15,
            "execution_health": 15, "supervisor_trust": 15,
        }, {})

        outcome = await machine.evaluate(bot, 75.0)
        assert outcome.decision == Decision.READY_FOR_LIVE
        assert not outcome.applied
        assert (await storage.get_bot("b1"))["stage"] == "CANARY"
        await machine.evaluate(bot, 75.0)
        notifier.ready_for_live.assert_awaited_once_with("b1", "Bot 1")

        outcome = await machine.approve_live("b1", "telegram:ops")
        assert outcome.decision == Decision.PROMOTE
        assert outcome.applied
        assert (await storage.get_bot("b1"))["stage"] == "LIVE"
        trail = (await storage.get_audit_trail("b1"))[0]
        assert trail["to_stage"] == "LIVE"
        assert trail["human_approval_required"] == 1
        assert trail["human_approved_by"] == "telegram:ops"

        # Already LIVE: nothing to approve
        assert (await machine.approve_live("b1", "telegram:ops")).decision == Decision.SKIP
        with pytest.raises(ValueError):
            await machine.approve_live("missing", "telegram:ops")
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_approval_requires_passing_gates():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, machine = _machine(db, clock)
        metrics = _canary_passing()
        metrics.stress_test_passed = False
        await storage.create_bot("b1", "Bot 1", stage="CANARY", metrics=metrics)
        outcome = await machine.approve_live("b1", "telegram:ops")
        assert outcome.decision == Decision.HOLD
        assert "stress_test_passed" in outcome.gates.blockers
        assert (await storage.get_bot("b1"))["stage"] == "CANARY"
        await db.close()
    finally:
        os.unlink(db_path)


# --- Demotion ---

@pytest.mark.asyncio
async def test_demotion_rules():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, notifier, machine = _machine(db, clock)
        shadow = await storage.create_bot("shadow", "Shadow", stage="SHADOW",
                                          metrics=_trials_passing(win_rate=30.0))
        paper = await storage.create_bot("paper", "Paper", stage="PAPER",
                                         metrics=_trials_passing(net_pnl=-1500.0))
        live = await storage.create_bot("live", "Live", stage="LIVE",
                                        metrics=_trials_passing(profit_factor=0.9))

        outcome = await machine.evaluate(shadow, 80.0)
        assert outcome.decision == Decision.DEMOTE
        assert outcome.to_stage == "PAPER"
        assert "win rate" in outcome.reason

        outcome = await machine.evaluate(paper, 80.0)
        assert outcome.decision == Decision.DEMOTE
        assert outcome.to_stage == "TRIALS"

        outcome = await machine.evaluate(live, 80.0)
        assert outcome.decision == Decision.DEMOTE
        assert outcome.to_stage == "CANARY"

        assert notifier.bot_demoted.await_count == 3
        assert (await storage.get_audit_trail("live"))[0]["decision"] == "DEMOTE"
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_no_demotion_without_completed_backtest():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, machine = _machine(db, clock)
        bot = await storage.create_bot("b1", "Bot 1", stage="SHADOW",
                                       metrics=_trials_passing(win_rate=10.0, backtest_completed=False))
        outcome = await machine.evaluate(bot, 80.0)
        assert outcome.decision == Decision.HOLD
        assert (await storage.get_bot("b1"))["stage"] == "SHADOW"

        # A healthy LIVE bot just holds
        live = await storage.create_bot("live", "Live", stage="LIVE", metrics=_canary_passing())
        assert (await machine.evaluate(live, 90.0)).decision == Decision.HOLD
        await db.close()
    finally:
        os.unlink(db_path)


# --- Skips ---

@pytest.mark.asyncio
async def test_lock_manual_and_killed_skip():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, machine = _machine(db, clock)
        locked = await storage.create_bot(
            "locked", "Locked", metrics=_trials_passing(),
            stage_locked_until=to_db(clock.now + timedelta(hours=1)), stage_lock_reason="review",
        )
        manual = await storage.create_bot("manual", "Manual", metrics=_trials_passing(), promotion_mode="MANUAL")
        for bot_id in ("locked", "manual"):
            await _consistent_sessions(storage, bot_id)

        outcome = await machine.evaluate(locked, 90.0)
        assert outcome.decision == Decision.SKIP
        assert outcome.reason == "stage_locked: review"
        assert (await machine.evaluate(manual, 90.0)).decision == Decision.SKIP

        # An expired lock no longer blocks
        clock.advance(hours=2)
        assert (await machine.evaluate(locked, 90.0)).decision == Decision.PROMOTE

        await storage.kill_bot("manual", actor="test", reason_code="OPERATOR_KILL", reason="test")
        killed = await storage.get_bot("manual")
        assert (await machine.evaluate(killed, 90.0)).reason == "inactive"
        await db.close()
    finally:
        os.unlink(db_path)


# --- Auto-revert ---

@pytest.mark.asyncio
async def test_auto_revert_restores_peak_generation():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, notifier, machine = _machine(db, clock)
        await storage.create_bot("b1", "Bot 1", stage="PAPER", strategy_config={"fast": 9})
        await storage.record_bot_metrics("b1", _trials_passing(sharpe=2.0))
        await storage.create_generation("b1", {"fast": 12}, parent_generation=1, reason_code="EVOLUTION")
        await storage.record_bot_metrics("b1", _trials_passing(sharpe=1.5))
        bot = await storage.get_bot("b1")

        outcome = await machine.evaluate(bot, 60.0)
        assert outcome.decision == Decision.HOLD
        assert outcome.reverted_to_generation == 1
        assert outcome.new_generation == 3

        bot = await storage.get_bot("b1")
        assert bot["stage"] == "PAPER"
        assert bot["current_generation"] == 3
        assert json.loads(bot["strategy_config"]) == {"fast": 9}
        gen = (await storage.get_generations("b1"))[0]
        assert gen["mutation_reason_code"] == "AUTO_REVERT"
        assert gen["parent_generation_number"] == 2

        jobs = await storage.get_jobs(bot_id="b1")
        assert [j["job_type"] for j in jobs] == ["BACKTESTER"]
        assert json.loads(jobs[0]["payload"])["generation"] == 3
        notifier.bot_reverted.assert_awaited_once()

        # The new generation has no stats yet, so the next cycle does not revert again
        again = await machine.evaluate(bot, 60.0)
        assert again.reverted_to_generation is None
        assert len(await storage.get_generations("b1")) == 3
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_small_decline_does_not_revert():
    db, db_path = await _make_db()
    try:
        clock = FakeClock()
        storage, _, machine = _machine(db, clock)
        await storage.create_bot("b1", "Bot 1", stage="PAPER")
        await storage.record_bot_metrics("b1", _trials_passing(sharpe=2.0))
        await storage.create_generation("b1", {"fast": 12}, parent_generation=1, reason_code="EVOLUTION")
        await storage.record_bot_metrics("b1", _trials_passing(sharpe=1.7))
        bot = await storage.get_bot("b1")

        assert await machine.check_auto_revert(bot) is None
        assert (await storage.get_bot("b1"))["current_generation"] == 2
        await db.close()
    finally:
        os.unlink(db_path)
