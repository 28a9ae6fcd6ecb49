"""Telegram Command Handlers — operator interface to the fleet.

Read commands show current fleet state. Write commands (/approve_live,
/kill, /unlock) go through the same storage and promotion paths the
workers use, so every change is audited.
"""

from __future__ import annotations

from typing import Callable

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from botfleet.shell.activity import ActivityLogger
from botfleet.shell.config import Config
from botfleet.shell.contract import BotMetrics, Decision
from botfleet.shell.storage import Storage

log = structlog.get_logger()


class BotCommands:
    """Handles all Telegram bot commands."""

    def __init__(
        self,
        config: Config,
        storage: Storage,
        activity: ActivityLogger,
        promotion=None,
        status_fn: Callable[[], dict] | None = None,
    ) -> None:
        self._config = config
        self._storage = storage
        self._activity = activity
        self._promotion = promotion
        self._status_fn = status_fn

    async def _send_long(self, update: Update, text: str, max_len: int = 4000) -> None:
        """Send a message, chunking if it exceeds Telegram's limit."""
        if len(text) <= max_len:
            await update.message.reply_text(text)
            return
        chunks = [text[i:i + max_len] for i in range(0, len(text), max_len)]
        for i, chunk in enumerate(chunks):
            prefix = "" if i == 0 else f"(part {i+1}/{len(chunks)})\n"
            await update.message.reply_text(prefix + chunk)

    def _authorized(self, update: Update) -> bool:
        """Check if user is authorized. Rejects all users if no IDs configured."""
        allowed = self._config.telegram.allowed_user_ids
        if not allowed:
            return False  # No configured users = locked down
        return bool(update.effective_user and update.effective_user.id in allowed)

    def _actor(self, update: Update) -> str:
        user = update.effective_user
        return f"telegram:{user.username or user.id}" if user else "telegram"

    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        await update.message.reply_text(
            "Fleet Engine\n\n"
            "Commands:\n"
            "/status - Engine health\n"
            "/bots - Active bots by stage\n"
            "/bot <id> - Bot detail\n"
            "/activity - Recent activity\n"
            "/approve_live <id> - Promote a CANARY bot to LIVE\n"
            "/unlock <id> - Clear a stage lock\n"
            "/kill <id> <reason> - Kill a bot"
        )

    async def cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Engine health — leader role, workers, queue, slots."""
        if not self._authorized(update):
            return
        status = self._status_fn() if self._status_fn else {}
        leader = status.get("leader", {})
        lines = [
            f"Node: {status.get('node_id', '?')}",
            f"Leader: {'yes' if leader.get('is_leader') else 'no'} (epoch {leader.get('epoch', 0)})",
        ]
        slots = status.get("slots")
        if slots:
            lines.append(f"Slots: heavy {slots['heavy']}, light {slots['light']} "
                         f"({slots['available_mb']:.0f} MB free)")
        if status.get("backend", {}).get("open"):
            lines.append("Backend circuit: OPEN")

        depth = await self._storage.queue_depth()
        if depth:
            lines.append("Queue: " + ", ".join(f"{k} {v}" for k, v in sorted(depth.items())))

        workers = status.get("workers", {})
        failing = {n: w for n, w in workers.items() if w.get("failures")}
        if failing:
            lines.append("\nFailing workers:")
            for name, w in failing.items():
                lines.append(f"  {name}: {w['failures']} failures — {w.get('last_error', '')[:80]}")
        elif workers:
            lines.append(f"Workers: {len(workers)} healthy")

        await update.message.reply_text("\n".join(lines))

    async def cmd_bots(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        bots = await self._storage.list_bots()
        if not bots:
            await update.message.reply_text("No active bots")
            return
        lines = [f"Active bots ({len(bots)}):"]
        for bot in bots:
            score = await self._storage.get_autonomy_score(bot["id"])
            score_str = f"{score['score']:.0f} {score['tier']}" if score else "unscored"
            lines.append(f"  {bot['id']} [{bot['stage']}] gen {bot['current_generation']} — {score_str}")
        await self._send_long(update, "\n".join(lines))

    async def cmd_bot(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        if not context.args:
            await update.message.reply_text("Usage: /bot <id>")
            return
        bot = await self._storage.get_bot(context.args[0])
        if not bot:
            await update.message.reply_text(f"Unknown bot: {context.args[0]}")
            return
        m = BotMetrics.from_json(bot["metrics"])
        lines = [
            f"{bot['name']} ({bot['id']})",
            f"Stage: {bot['stage']} ({bot['promotion_mode']})",
            f"Generation: {bot['current_generation']}",
            f"Trades: {m.total_trades}, WR {m.win_rate:.1f}%, PF {m.profit_factor:.2f}",
            f"Sharpe: {m.sharpe:.2f}, Max DD {m.max_drawdown_pct:.1f}%",
        ]
        if bot["stage_locked_until"]:
            lines.append(f"Locked until: {bot['stage_locked_until']} ({bot['stage_lock_reason'] or ''})")
        if bot["killed_at"]:
            lines.append(f"KILLED at {bot['killed_at']}: {bot['kill_reason']}")
        audit = await self._storage.get_audit_trail(bot["id"], limit=3)
        if audit:
            lines.append("\nRecent stage changes:")
            for row in audit:
                lines.append(f"  {row['created_at'][:16]} {row['from_stage']} → {row['to_stage']} ({row['decision']})")
        await update.message.reply_text("\n".join(lines))

    async def cmd_activity(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        rows = await self._activity.recent(limit=15)
        if not rows:
            await update.message.reply_text("No activity yet")
            return
        lines = [f"{r['timestamp'][11:19]} [{r['category']}] {r['summary']}" for r in rows]
        await self._send_long(update, "\n".join(lines))

    async def cmd_approve_live(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        if not context.args:
            await update.message.reply_text("Usage: /approve_live <id>")
            return
        if not self._promotion:
            await update.message.reply_text("Promotion engine not running")
            return
        bot_id = context.args[0]
        try:
            outcome = await self._promotion.approve_live(bot_id, self._actor(update))
        except ValueError as e:
            await update.message.reply_text(str(e))
            return
        log.info("telegram.approve_live", bot_id=bot_id, decision=outcome.decision.value)
        if outcome.decision == Decision.PROMOTE:
            await update.message.reply_text(f"{bot_id} promoted to LIVE")
        else:
            await update.message.reply_text(f"{bot_id} not promoted: {outcome.reason}")

    async def cmd_unlock(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        if not context.args:
            await update.message.reply_text("Usage: /unlock <id>")
            return
        bot_id = context.args[0]
        if not await self._storage.update_bot(bot_id, {"stage_locked_until": None, "stage_lock_reason": None}):
            await update.message.reply_text(f"Unknown bot: {bot_id}")
            return
        await self._activity.promotion(f"Stage lock cleared by {self._actor(update)}", bot_id=bot_id)
        await update.message.reply_text(f"{bot_id} unlocked")

    async def cmd_kill(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Emergency stop for one bot."""
        if not self._authorized(update):
            return
        if not context.args:
            await update.message.reply_text("Usage: /kill <id> <reason>")
            return
        bot_id = context.args[0]
        reason = " ".join(context.args[1:]) or "operator request"
        if not await self._storage.get_bot(bot_id):
            await update.message.reply_text(f"Unknown bot: {bot_id}")
            return
        actor = self._actor(update)
        result = await self._storage.kill_bot(bot_id, actor=actor, reason_code="OPERATOR_KILL", reason=reason)
        if result.already_killed:
            await update.message.reply_text(f"{bot_id} was already killed")
            return
        log.warning("telegram.kill", bot_id=bot_id, actor=actor, reason=reason)
        await self._activity.instance(
            f"Bot {bot_id} killed by {actor}: {reason}", severity="critical", title="Operator kill",
            bot_id=bot_id, detail={"stopped_instances": result.stopped_instances,
                                   "cancelled_jobs": result.cancelled_jobs},
        )
        await update.message.reply_text(
            f"{bot_id} KILLED\nInstances stopped: {result.stopped_instances}\n"
            f"Jobs cancelled: {result.cancelled_jobs}"
        )
