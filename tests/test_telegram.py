"""Tests for Telegram operator commands and the notifier."""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from botfleet.autonomy.promotion import PromotionOutcome
from botfleet.shell.activity import ActivityLogger
from botfleet.shell.clock import to_db
from botfleet.shell.config import Config
from botfleet.shell.contract import Decision, JobType
from botfleet.shell.database import Database
from botfleet.shell.storage import Storage
from botfleet.telegram.commands import BotCommands
from botfleet.telegram.notifications import Notifier


async def _make_db():
    f = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    db_path = f.name
    f.close()
    db = Database(db_path)
    await db.connect()
    return db, db_path


def _update(user_id: int = 111):
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_user.username = "ops"
    update.message.reply_text = AsyncMock()
    return update


def _context(*args):
    context = MagicMock()
    context.args = list(args)
    return context


def _commands(db, promotion=None, status_fn=None, allowed=(111,)):
    config = Config()
    config.telegram.allowed_user_ids = list(allowed)
    storage = Storage(db)
    return storage, BotCommands(config, storage, ActivityLogger(db), promotion, status_fn)


def _reply(update) -> str:
    return update.message.reply_text.call_args[0][0]


# --- Authorization ---

@pytest.mark.asyncio
async def test_unauthorized_users_get_silence():
    db, db_path = await _make_db()
    try:
        storage, commands = _commands(db)
        await storage.create_bot("b1", "Bot 1")

        update = _update(user_id=999)
        await commands.cmd_kill(update, _context("b1", "test"))
        update.message.reply_text.assert_not_awaited()
        assert (await storage.get_bot("b1"))["killed_at"] is None

        # No configured users locks everyone out
        _, locked = _commands(db, allowed=())
        update = _update()
        await locked.cmd_help(update, _context())
        update.message.reply_text.assert_not_awaited()
        await db.close()
    finally:
        os.unlink(db_path)


# --- Read commands ---

@pytest.mark.asyncio
async def test_status_and_bots():
    db, db_path = await _make_db()
    try:
        status = {
            "node_id": "node-a",
            "leader": {"is_leader": True, "epoch": 2},
            "slots": {"heavy": 2, "light": 6, "available_mb": 9000.0},
            "workers": {"autonomy": {"failures": 3, "last_error": "database is locked"},
                        "job_monitor": {"failures": 0}},
        }
        storage, commands = _commands(db, status_fn=lambda: status)
        await storage.create_bot("b1", "Bot 1", stage="PAPER")
        await storage.create_job("b1", JobType.BACKTESTER.value)

        update = _update()
        await commands.cmd_status(update, _context())
        text = _reply(update)
        assert "Node: node-a" in text
        assert "Leader: yes (epoch 2)" in text
        assert "Queue: BACKTESTER 1" in text
        assert "autonomy: 3 failures" in text

        update = _update()
        await commands.cmd_bots(update, _context())
        assert "b1 [PAPER] gen 1" in _reply(update)

        update = _update()
        await commands.cmd_bot(update, _context("b1"))
        assert "Stage: PAPER (AUTO)" in _reply(update)

        update = _update()
        await commands.cmd_bot(update, _context("nope"))
        assert _reply(update) == "Unknown bot: nope"
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_long_replies_are_chunked():
    db, db_path = await _make_db()
    try:
        storage, commands = _commands(db)
        for i in range(200):
            await storage.create_bot(f"bot-{i:03d}-with-a-fairly-long-identifier", f"Bot {i}")

        update = _update()
        await commands.cmd_bots(update, _context())
        calls = update.message.reply_text.await_args_list
        assert len(calls) > 1
        assert all(len(c[0][0]) <= 4000 + 20 for c in calls)
        assert calls[1][0][0].startswith("(part 2/")
        await db.close()
    finally:
        os.unlink(db_path)


# --- Write commands ---

@pytest.mark.asyncio
async def test_kill_is_idempotent():
    db, db_path = await _make_db()
    try:
        storage, commands = _commands(db)
        await storage.create_bot("b1", "Bot 1", is_trading_enabled=1)
        job_id = await storage.create_job("b1", JobType.BACKTESTER.value)

        update = _update()
        await commands.cmd_kill(update, _context("b1", "bad", "fills"))
        text = _reply(update)
        assert text.startswith("b1 KILLED")
        assert "Jobs cancelled: 1" in text

        bot = await storage.get_bot("b1")
        assert bot["kill_reason"] == "bad fills"
        assert bot["is_trading_enabled"] == 0
        assert (await storage.get_job(job_id))["status"] == "CANCELLED"
        rows = await db.fetchall("SELECT actor, reason_code FROM kill_events")
        assert rows == [{"actor": "telegram:ops", "reason_code": "OPERATOR_KILL"}]

        update = _update()
        await commands.cmd_kill(update, _context("b1"))
        assert _reply(update) == "b1 was already killed"
        assert await storage.count_kill_events("b1") == 1

        update = _update()
        await commands.cmd_kill(update, _context("ghost"))
        assert _reply(update) == "Unknown bot: ghost"
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_unlock_clears_stage_lock():
    db, db_path = await _make_db()
    try:
        storage, commands = _commands(db)
        until = to_db(datetime.now(timezone.utc) + timedelta(days=1))
        await storage.create_bot("b1", "Bot 1", stage_locked_until=until, stage_lock_reason="review")

        update = _update()
        await commands.cmd_unlock(update, _context("b1"))
        assert _reply(update) == "b1 unlocked"
        bot = await storage.get_bot("b1")
        assert bot["stage_locked_until"] is None
        assert bot["stage_lock_reason"] is None

        update = _update()
        await commands.cmd_unlock(update, _context("ghost"))
        assert _reply(update) == "Unknown bot: ghost"
        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_approve_live():
    db, db_path = await _make_db()
    try:
        promotion = AsyncMock()
        promotion.approve_live.return_value = PromotionOutcome(
            "b1", Decision.PROMOTE, "CANARY", "LIVE", applied=True,
        )
        _, commands = _commands(db, promotion=promotion)

        update = _update()
        await commands.cmd_approve_live(update, _context("b1"))
        assert _reply(update) == "b1 promoted to LIVE"
        promotion.approve_live.assert_awaited_once_with("b1", "telegram:ops")

        promotion.approve_live.return_value = PromotionOutcome(
            "b2", Decision.SKIP, "PAPER", reason="not_canary (PAPER)",
        )
        update = _update()
        await commands.cmd_approve_live(update, _context("b2"))
        assert _reply(update) == "b2 not promoted: not_canary (PAPER)"

        promotion.approve_live.side_effect = ValueError("Unknown bot: b9")
        update = _update()
        await commands.cmd_approve_live(update, _context("b9"))
        assert _reply(update) == "Unknown bot: b9"

        update = _update()
        await commands.cmd_approve_live(update, _context())
        assert _reply(update) == "Usage: /approve_live <id>"
        await db.close()
    finally:
        os.unlink(db_path)


# --- Notifier ---

@pytest.mark.asyncio
async def test_notifier_disabled_without_app():
    notifier = Notifier(chat_id="42")
    assert not notifier.enabled
    await notifier.bot_promoted("Bot 1", "TRIALS", "PAPER", "gates passed")
    await notifier.drain()


@pytest.mark.asyncio
async def test_notifier_sends_and_swallows_failures():
    app = MagicMock()
    app.bot.send_message = AsyncMock()
    notifier = Notifier(chat_id="42", app=app, retries=1)
    assert notifier.enabled

    await notifier.bot_killed("b1", "OPERATOR_KILL", "bad fills")
    await notifier.drain()
    app.bot.send_message.assert_awaited_once()
    assert app.bot.send_message.call_args.kwargs["chat_id"] == "42"
    assert "b1" in app.bot.send_message.call_args.kwargs["text"]

    app.bot.send_message.side_effect = RuntimeError("network down")
    await notifier.worker_critical("autonomy", 5, "boom")
    await notifier.drain()
    assert app.bot.send_message.await_count == 2
