"""Activity Log — unified fleet timeline for observability.

Central writer for orchestration events. Writes to SQLite and emits
structlog entries. A failed write is logged and dropped: the timeline is
never allowed to break a worker.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import structlog

from botfleet.shell.clock import Clock, to_db, utcnow

if TYPE_CHECKING:
    from botfleet.shell.database import Database

log = structlog.get_logger()


class ActivityLogger:
    """Writes activity entries to DB and emits structlog."""

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self._db = db
        self._clock = clock

    async def log(
        self,
        category: str,
        summary: str,
        severity: str = "info",
        detail: dict | str | None = None,
        title: str | None = None,
        bot_id: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        """Write an activity entry to DB and emit structlog."""
        ts = to_db(self._clock())

        detail_str = None
        if detail is not None:
            if isinstance(detail, str):
                detail_str = detail
            else:
                try:
                    detail_str = json.dumps(detail, default=str)
                except (TypeError, ValueError):
                    detail_str = str(detail)

        try:
            await self._db.execute(
                "INSERT INTO activity_log (timestamp, category, severity, title, summary, detail, bot_id, trace_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (ts, category, severity, title, summary, detail_str, bot_id, trace_id),
            )
        except Exception as e:
            log.warning("activity.write_failed", category=category, error=str(e))

        log.info("activity", category=category, severity=severity, summary=summary, bot_id=bot_id)

    # --- Convenience methods ---

    async def system(self, summary: str, severity: str = "info", detail: dict | None = None, **kw) -> None:
        await self.log("SYSTEM", summary, severity, detail, **kw)

    async def job(self, summary: str, severity: str = "info", detail: dict | None = None, **kw) -> None:
        await self.log("JOB", summary, severity, detail, **kw)

    async def instance(self, summary: str, severity: str = "info", detail: dict | None = None, **kw) -> None:
        await self.log("INSTANCE", summary, severity, detail, **kw)

    async def promotion(self, summary: str, severity: str = "info", detail: dict | None = None, **kw) -> None:
        await self.log("PROMOTION", summary, severity, detail, **kw)

    async def autonomy(self, summary: str, severity: str = "info", detail: dict | None = None, **kw) -> None:
        await self.log("AUTONOMY", summary, severity, detail, **kw)

    async def worker(self, summary: str, severity: str = "info", detail: dict | None = None, **kw) -> None:
        await self.log("WORKER", summary, severity, detail, **kw)

    # --- Query methods ---

    async def recent(self, limit: int = 30) -> list[dict]:
        """Return last N entries in chronological order (oldest first)."""
        rows = await self._db.fetchall(
            "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return list(reversed(rows))

    async def query(
        self,
        limit: int = 50,
        category: str | None = None,
        severity: str | None = None,
        bot_id: str | None = None,
    ) -> list[dict]:
        """Filtered query for the status API. Returns newest-first."""
        sql = "SELECT * FROM activity_log WHERE 1=1"
        params: list = []

        if category:
            sql += " AND category = ?"
            params.append(category)
        if severity:
            sql += " AND severity = ?"
            params.append(severity)
        if bot_id:
            sql += " AND bot_id = ?"
            params.append(bot_id)

        sql += " ORDER BY id DESC LIMIT ?"
        params.append(min(limit, 500))

        return await self._db.fetchall(sql, tuple(params))
