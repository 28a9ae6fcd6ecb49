"""Notifications — operator alerts over Telegram.

Components call the typed methods below; delivery is best-effort and
never raises into the caller. Activity-log entries are written by the
components themselves, so this layer only formats and sends.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from telegram.ext import Application

log = structlog.get_logger()


class Notifier:
    """Fire-and-forget Telegram dispatch with a short retry."""

    def __init__(self, chat_id: str, app: Application | None = None, retries: int = 3) -> None:
        self._chat_id = chat_id
        self._app = app
        self._retries = retries
        self._pending: set[asyncio.Task] = set()

    def set_app(self, app: Application | None) -> None:
        self._app = app

    @property
    def enabled(self) -> bool:
        return bool(self._app and self._chat_id)

    async def _send_telegram(self, text: str) -> None:
        if not self.enabled:
            return
        for attempt in range(self._retries):
            try:
                await self._app.bot.send_message(chat_id=self._chat_id, text=text[:4096])
                return
            except Exception as e:
                if attempt < self._retries - 1:
                    log.warning("notifier.send_retry", attempt=attempt + 1, error=str(e))
                    await asyncio.sleep(2 ** attempt)
                else:
                    log.error("notifier.send_failed", error=str(e))

    async def _dispatch(self, event_name: str, text: str) -> None:
        """Queue a send without blocking the caller."""
        log.debug("notifier.dispatch", notification=event_name)
        if not self.enabled:
            return
        task = asyncio.create_task(self._send_telegram(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for queued sends, used on shutdown."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    # --- Stage Events ---

    async def bot_promoted(self, name: str, from_stage: str, to_stage: str, reason: str) -> None:
        await self._dispatch(
            "bot_promoted",
            f"Bot Promoted: {name}\n{from_stage} → {to_stage}\n{reason}",
        )

    async def bot_demoted(self, name: str, from_stage: str, to_stage: str, reason: str) -> None:
        await self._dispatch(
            "bot_demoted",
            f"Bot Demoted: {name}\n{from_stage} → {to_stage}\nReason: {reason}",
        )

    async def ready_for_live(self, bot_id: str, name: str) -> None:
        await self._dispatch(
            "ready_for_live",
            f"Ready for LIVE: {name}\nAll CANARY gates passed.\nApprove with /approve_live {bot_id}",
        )

    async def bot_reverted(self, name: str, generation: int, reason: str) -> None:
        await self._dispatch(
            "bot_reverted",
            f"Auto-Revert: {name}\nRestored generation {generation}\nReason: {reason}",
        )

    # --- Supervision Events ---

    async def bot_killed(self, bot_id: str, reason_code: str, reason: str) -> None:
        await self._dispatch(
            "bot_killed",
            f"BOT KILLED: {bot_id}\nCode: {reason_code}\nReason: {reason}",
        )

    async def worker_critical(self, name: str, failures: int, error: str) -> None:
        await self._dispatch(
            "worker_critical",
            f"Worker Critical: {name}\nConsecutive failures: {failures}\nLast error: {error[:500]}",
        )

    # --- System Events ---

    async def system_online(self, bots: int, leader: bool) -> None:
        role = "leader" if leader else "standby"
        await self._dispatch(
            "system_online",
            f"Fleet Engine Online\nActive bots: {bots}\nRole: {role}",
        )

    async def system_shutdown(self) -> None:
        await self._dispatch("system_shutdown", "Fleet Engine Shutting Down")
