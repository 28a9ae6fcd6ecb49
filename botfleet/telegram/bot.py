"""Telegram Bot — setup and lifecycle management."""

from __future__ import annotations

import structlog
from telegram.ext import Application, CommandHandler

from botfleet.shell.config import TelegramConfig
from botfleet.telegram.commands import BotCommands

log = structlog.get_logger()


class TelegramBot:
    """Manages the Telegram bot application lifecycle."""

    def __init__(self, config: TelegramConfig, commands: BotCommands) -> None:
        self._config = config
        self._commands = commands
        self._app: Application | None = None

    async def start(self) -> None:
        """Initialize and start the Telegram bot."""
        if not self._config.enabled or not self._config.bot_token:
            log.info("telegram.disabled")
            return

        self._app = (
            Application.builder()
            .token(self._config.bot_token)
            .build()
        )

        handlers = {
            "start": self._commands.cmd_help,
            "help": self._commands.cmd_help,
            "status": self._commands.cmd_status,
            "bots": self._commands.cmd_bots,
            "bot": self._commands.cmd_bot,
            "activity": self._commands.cmd_activity,
            "approve_live": self._commands.cmd_approve_live,
            "unlock": self._commands.cmd_unlock,
            "kill": self._commands.cmd_kill,
        }

        for name, handler in handlers.items():
            self._app.add_handler(CommandHandler(name, handler))

        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling(drop_pending_updates=True)
        log.info("telegram.started")

    async def stop(self) -> None:
        """Gracefully stop the bot."""
        if self._app:
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            log.info("telegram.stopped")

    @property
    def app(self) -> Application | None:
        return self._app
