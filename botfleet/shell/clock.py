"""UTC time helpers shared by every component that reads or writes timestamps.

Timestamps are stored as fixed-width strings so SQL string comparison
orders them correctly. Components take a ``clock`` callable so tests can
drive time explicitly.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

DB_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(DB_FORMAT)


def from_db(value: str | None) -> datetime | None:
    """Parse a stored timestamp. Accepts the legacy ``datetime('now')`` form too."""
    if not value:
        return None
    for fmt in (DB_FORMAT, "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return datetime.fromisoformat(value).astimezone(timezone.utc)
