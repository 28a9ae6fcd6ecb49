"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import os
import sys

import structlog

# Libraries that log every request or job tick at INFO
NOISY_LOGGERS = ("aiosqlite", "aiohttp.access", "apscheduler", "telegram", "httpx")


def setup_logging(log_level: str = "INFO", node_id: str | None = None) -> None:
    """Configure structlog. Set JSON_LOGS=1 for JSON output (servers), default is console (dev).

    With ``node_id`` every event carries the node, so lines from several
    engines sharing one lease can be told apart.
    """
    use_json = os.environ.get("JSON_LOGS", "").strip() in ("1", "true", "yes")
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if node_id:
        structlog.contextvars.bind_contextvars(node_id=node_id)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
