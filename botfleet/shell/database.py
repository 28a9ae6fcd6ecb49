"""SQLite database — single source of truth for fleet state.

The connection runs in autocommit mode. Multi-statement atomic work goes
through ``transaction()``, which opens ``BEGIN IMMEDIATE`` so the write
lock is taken up front and conditional statements inside it cannot race
another process.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite
import structlog

log = structlog.get_logger()

SCHEMA = """
-- Bots and their pipeline position
CREATE TABLE IF NOT EXISTS bots (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    stage TEXT NOT NULL DEFAULT 'TRIALS',  -- TRIALS, PAPER, SHADOW, CANARY, LIVE
    stage_updated_at TEXT,
    stage_locked_until TEXT,
    stage_lock_reason TEXT,
    promotion_mode TEXT NOT NULL DEFAULT 'AUTO',  -- AUTO, MANUAL
    current_generation INTEGER NOT NULL DEFAULT 1,
    strategy_config TEXT,                  -- JSON
    metrics TEXT,                          -- JSON BotMetrics of latest evaluation
    matrix_best_cell TEXT,                 -- JSON BotMetrics of best cross-validated cell
    matrix_updated_at TEXT,
    is_trading_enabled INTEGER NOT NULL DEFAULT 0,
    default_account_id TEXT,
    killed_at TEXT,
    kill_reason TEXT,
    archived_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Work queue
CREATE TABLE IF NOT EXISTS bot_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL REFERENCES bots(id),
    job_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'QUEUED',  -- QUEUED, RUNNING, COMPLETED, FAILED, TIMEOUT, CANCELLED
    payload TEXT,                           -- JSON, decoded once at claim time
    priority INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    lease_owner TEXT,
    started_at TEXT,
    last_heartbeat_at TEXT,
    completed_at TEXT,
    error_message TEXT,
    status_reason_code TEXT,
    result TEXT,                            -- JSON
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Job status transition audit
CREATE TABLE IF NOT EXISTS job_run_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES bot_jobs(id),
    from_status TEXT,
    to_status TEXT NOT NULL,
    reason_code TEXT,
    reason TEXT,
    trace_id TEXT,
    metadata TEXT,                          -- JSON
    created_at TEXT DEFAULT (datetime('now'))
);

-- Running processes (runners and job-bound workers)
CREATE TABLE IF NOT EXISTS bot_instances (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL REFERENCES bots(id),
    status TEXT NOT NULL DEFAULT 'PENDING',  -- PENDING, RUNNING, STOPPED, RESTARTING
    activity_state TEXT,
    job_type TEXT NOT NULL DEFAULT 'RUNNER',
    job_id INTEGER,
    account_id TEXT,
    last_heartbeat_at TEXT,
    started_at TEXT,
    stopped_at TEXT,
    stop_reason TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Backtest runs and their metrics
CREATE TABLE IF NOT EXISTS backtest_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL REFERENCES bots(id),
    job_id INTEGER,
    generation_number INTEGER,
    kind TEXT NOT NULL DEFAULT 'BASELINE',  -- BASELINE, MATRIX_CELL
    status TEXT NOT NULL DEFAULT 'QUEUED',  -- QUEUED, RUNNING, COMPLETED, FAILED
    metrics TEXT,                           -- JSON BotMetrics
    error_message TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT
);

-- Strategy lineage
CREATE TABLE IF NOT EXISTS bot_generations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL REFERENCES bots(id),
    generation_number INTEGER NOT NULL,
    parent_generation_number INTEGER,
    mutation_reason_code TEXT,
    strategy_config TEXT,                   -- JSON
    sharpe REAL,
    net_pnl REAL,
    max_drawdown_pct REAL,
    win_rate REAL,
    total_trades INTEGER,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(bot_id, generation_number)
);

-- Latest autonomy readiness score, one row per bot
CREATE TABLE IF NOT EXISTS autonomy_scores (
    bot_id TEXT PRIMARY KEY REFERENCES bots(id),
    score REAL NOT NULL,
    tier TEXT NOT NULL,
    data_reliability REAL NOT NULL,
    decision_quality REAL NOT NULL,
    risk_discipline REAL NOT NULL,
    execution_health REAL NOT NULL,
    supervisor_trust REAL NOT NULL,
    breakdown TEXT,                         -- JSON
    updated_at TEXT NOT NULL
);

-- Every promotion/demotion decision with its evidence
CREATE TABLE IF NOT EXISTS promotion_audit_trail (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL REFERENCES bots(id),
    from_stage TEXT NOT NULL,
    to_stage TEXT NOT NULL,
    decision TEXT NOT NULL,                 -- PROMOTE, DEMOTE
    trace_id TEXT,
    gates_snapshot TEXT,                    -- JSON
    gates_passed INTEGER,
    gates_total INTEGER,
    blocker_codes TEXT,                     -- JSON array
    metrics_snapshot TEXT,                  -- JSON
    metrics_source TEXT,                    -- 'latest' or 'best_cell'
    autonomy_score REAL,
    autonomy_tier TEXT,
    decision_reason TEXT,
    human_approval_required INTEGER DEFAULT 0,
    human_approved_by TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Kill switch history
CREATE TABLE IF NOT EXISTS kill_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL REFERENCES bots(id),
    event_type TEXT NOT NULL DEFAULT 'KILL',
    actor TEXT NOT NULL,
    reason_code TEXT NOT NULL,
    reason TEXT,
    metadata TEXT,                          -- JSON
    trace_id TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Unified fleet timeline
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    category TEXT NOT NULL,                 -- SYSTEM, JOB, INSTANCE, PROMOTION, AUTONOMY, WORKER
    severity TEXT NOT NULL DEFAULT 'info',
    title TEXT,
    summary TEXT NOT NULL,
    detail TEXT,                            -- JSON
    bot_id TEXT,
    trace_id TEXT
);

-- Leader lease with fencing epoch
CREATE TABLE IF NOT EXISTS leader_lease (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    epoch INTEGER NOT NULL DEFAULT 1,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

-- Short-lived named locks
CREATE TABLE IF NOT EXISTS distributed_locks (
    lock_key TEXT PRIMARY KEY,
    lock_id TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);

-- At most one RUNNING instance per bot
CREATE UNIQUE INDEX IF NOT EXISTS idx_instances_one_running ON bot_instances(bot_id) WHERE status = 'RUNNING';

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_jobs_status_type ON bot_jobs(status, job_type, priority);
CREATE INDEX IF NOT EXISTS idx_jobs_bot ON bot_jobs(bot_id, status);
CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_run_events(job_id, created_at);
CREATE INDEX IF NOT EXISTS idx_instances_status ON bot_instances(status, bot_id);
CREATE INDEX IF NOT EXISTS idx_sessions_bot ON backtest_sessions(bot_id, status, completed_at);
CREATE INDEX IF NOT EXISTS idx_generations_bot ON bot_generations(bot_id, generation_number);
CREATE INDEX IF NOT EXISTS idx_audit_bot ON promotion_audit_trail(bot_id, created_at);
CREATE INDEX IF NOT EXISTS idx_kill_events_bot ON kill_events(bot_id);
CREATE INDEX IF NOT EXISTS idx_activity_ts ON activity_log(timestamp);
"""


class Transaction:
    """Statement runner bound to an open ``BEGIN IMMEDIATE`` block."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self._conn.execute(sql, params)

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]


class Database:
    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        self._path = db_path
        self._busy_timeout_ms = busy_timeout_ms
        self._conn: aiosqlite.Connection | None = None
        # Serializes statements on the shared connection so a transaction
        # never absorbs another coroutine's writes.
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        await self._conn.executescript(SCHEMA)
        log.info("database.connected", path=self._path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            log.info("database.closed")

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        async with self._lock:
            return await self.conn.execute(sql, params)

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        async with self._lock:
            cursor = await self.conn.execute(sql, params)
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self._lock:
            cursor = await self.conn.execute(sql, params)
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run statements atomically. Do not call ``Database`` methods inside."""
        async with self._lock:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(self.conn)
            except BaseException:
                await self.conn.execute("ROLLBACK")
                raise
            await self.conn.execute("COMMIT")
