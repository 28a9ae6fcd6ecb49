"""Storage — every read and write of fleet state goes through here.

Operations that must be atomic (claiming a job, restarting an instance,
killing a bot, moving a stage) run inside one ``BEGIN IMMEDIATE``
transaction with conditional statements, so replays and concurrent
callers never double-apply them. Expected outcomes come back as result
objects; only infrastructure failures raise.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

import structlog

from botfleet.shell.clock import Clock, to_db, utcnow
from botfleet.shell.contract import (
    BASELINE_SESSION,
    EXECUTABLE_STAGES,
    TERMINATED_BY_SUPERVISOR,
    BotMetrics,
    InstanceStatus,
    JobStatus,
)
from botfleet.shell.database import Database, Transaction

log = structlog.get_logger()

_BOT_COLUMNS = {
    "name", "stage", "stage_updated_at", "stage_locked_until", "stage_lock_reason",
    "promotion_mode", "current_generation", "strategy_config", "metrics",
    "matrix_best_cell", "matrix_updated_at", "is_trading_enabled",
    "default_account_id", "killed_at", "kill_reason", "archived_at",
}
_JOB_COLUMNS = {
    "status", "payload", "priority", "attempts", "max_attempts", "lease_owner",
    "started_at", "last_heartbeat_at", "completed_at", "error_message",
    "status_reason_code", "result",
}


def _encode(value):
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, BotMetrics):
        return value.to_json()
    if isinstance(value, Enum):
        return value.value
    return value


def _placeholders(n: int) -> str:
    return ", ".join("?" * n)


@dataclass
class RestartResult:
    restarted: bool
    reason: str = ""
    new_instance_id: int | None = None
    failed_job_ids: list[int] = field(default_factory=list)


@dataclass
class KillResult:
    killed: bool
    already_killed: bool = False
    stopped_instances: int = 0
    cancelled_jobs: int = 0


@dataclass
class StartResult:
    started: bool
    reason: str = ""
    instance_id: int | None = None


class Storage:
    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self._db = db
        self._clock = clock

    def _now(self) -> str:
        return to_db(self._clock())

    def _ago(self, minutes: float) -> str:
        return to_db(self._clock() - timedelta(minutes=minutes))

    # --- Bots ---

    async def create_bot(
        self,
        bot_id: str,
        name: str,
        stage: str = "TRIALS",
        strategy_config: dict | None = None,
        **fields,
    ) -> dict:
        now = self._now()
        async with self._db.transaction() as tx:
            await tx.execute(
                "INSERT INTO bots (id, name, stage, stage_updated_at, strategy_config, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (bot_id, name, _encode(stage), now, json.dumps(strategy_config or {}), now, now),
            )
            await tx.execute(
                "INSERT INTO bot_generations (bot_id, generation_number, mutation_reason_code, strategy_config, created_at) "
                "VALUES (?, 1, 'INITIAL', ?, ?)",
                (bot_id, json.dumps(strategy_config or {}), now),
            )
        if fields:
            await self.update_bot(bot_id, fields)
        return await self.get_bot(bot_id)

    async def get_bot(self, bot_id: str) -> dict | None:
        return await self._db.fetchone("SELECT * FROM bots WHERE id = ?", (bot_id,))

    async def list_bots(self, include_inactive: bool = False) -> list[dict]:
        sql = "SELECT * FROM bots"
        if not include_inactive:
            sql += " WHERE killed_at IS NULL AND archived_at IS NULL"
        return await self._db.fetchall(sql + " ORDER BY id")

    async def update_bot(self, bot_id: str, patch: dict) -> bool:
        unknown = set(patch) - _BOT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown bot columns: {sorted(unknown)}")
        if not patch:
            return False
        sets = ", ".join(f"{k} = ?" for k in patch)
        params = tuple(_encode(v) for v in patch.values()) + (self._now(), bot_id)
        cursor = await self._db.execute(f"UPDATE bots SET {sets}, updated_at = ? WHERE id = ?", params)
        return cursor.rowcount > 0

    async def record_bot_metrics(self, bot_id: str, metrics: BotMetrics, generation: int | None = None) -> None:
        """Refresh the bot's latest metrics and the stats of the generation they belong to."""
        async with self._db.transaction() as tx:
            bot = await tx.fetchone("SELECT current_generation FROM bots WHERE id = ?", (bot_id,))
            if not bot:
                return
            generation = generation or bot["current_generation"]
            now = self._now()
            await tx.execute(
                "UPDATE bots SET metrics = ?, updated_at = ? WHERE id = ?",
                (metrics.to_json(), now, bot_id),
            )
            await tx.execute(
                "UPDATE bot_generations SET sharpe = ?, net_pnl = ?, max_drawdown_pct = ?, win_rate = ?, "
                "total_trades = ? WHERE bot_id = ? AND generation_number = ?",
                (metrics.sharpe, metrics.net_pnl, metrics.max_drawdown_pct, metrics.win_rate,
                 metrics.total_trades, bot_id, generation),
            )

    async def kill_bot(
        self,
        bot_id: str,
        actor: str,
        reason_code: str,
        reason: str,
        metadata: dict | None = None,
        trace_id: str | None = None,
    ) -> KillResult:
        """Kill a bot: trading off, instances stopped, open jobs cancelled.

        Conditional on ``killed_at IS NULL`` so a replay is a no-op and
        exactly one kill event is recorded.
        """
        now = self._now()
        async with self._db.transaction() as tx:
            cursor = await tx.execute(
                "UPDATE bots SET killed_at = ?, kill_reason = ?, is_trading_enabled = 0, updated_at = ? "
                "WHERE id = ? AND killed_at IS NULL",
                (now, reason, now, bot_id),
            )
            if cursor.rowcount == 0:
                return KillResult(killed=False, already_killed=True)

            stopped = await tx.execute(
                "UPDATE bot_instances SET status = ?, stopped_at = ?, stop_reason = ?, updated_at = ? "
                "WHERE bot_id = ? AND status IN (?, ?, ?)",
                (InstanceStatus.STOPPED.value, now, reason_code, now, bot_id,
                 InstanceStatus.RUNNING.value, InstanceStatus.PENDING.value, InstanceStatus.RESTARTING.value),
            )
            cancelled = await tx.execute(
                "UPDATE bot_jobs SET status = ?, completed_at = ?, status_reason_code = ?, error_message = ?, "
                "updated_at = ? WHERE bot_id = ? AND status IN (?, ?)",
                (JobStatus.CANCELLED.value, now, reason_code, f"Bot killed: {reason}", now, bot_id,
                 JobStatus.QUEUED.value, JobStatus.RUNNING.value),
            )
            await tx.execute(
                "INSERT INTO kill_events (bot_id, event_type, actor, reason_code, reason, metadata, trace_id, created_at) "
                "VALUES (?, 'KILL', ?, ?, ?, ?, ?, ?)",
                (bot_id, actor, reason_code, reason, json.dumps(metadata or {}, default=str), trace_id, now),
            )
        return KillResult(killed=True, stopped_instances=stopped.rowcount, cancelled_jobs=cancelled.rowcount)

    async def count_kill_events(self, bot_id: str) -> int:
        row = await self._db.fetchone(
            "SELECT COUNT(*) AS n FROM kill_events WHERE bot_id = ? AND event_type = 'KILL'", (bot_id,)
        )
        return row["n"]

    async def apply_stage_change(self, bot_id: str, from_stage: str, to_stage: str, audit: dict) -> bool:
        """Move a bot between stages and record the audit row, atomically.

        Returns False if the bot is no longer at ``from_stage`` (another
        cycle or an operator moved it first).
        """
        now = self._now()
        async with self._db.transaction() as tx:
            cursor = await tx.execute(
                "UPDATE bots SET stage = ?, stage_updated_at = ?, updated_at = ? "
                "WHERE id = ? AND stage = ? AND killed_at IS NULL",
                (to_stage, now, now, bot_id, from_stage),
            )
            if cursor.rowcount == 0:
                return False
            await tx.execute(
                "INSERT INTO promotion_audit_trail (bot_id, from_stage, to_stage, decision, trace_id, "
                "gates_snapshot, gates_passed, gates_total, blocker_codes, metrics_snapshot, metrics_source, "
                "autonomy_score, autonomy_tier, decision_reason, human_approval_required, human_approved_by, created_at) "
                f"VALUES ({_placeholders(17)})",
                (
                    bot_id, from_stage, to_stage, audit.get("decision"), audit.get("trace_id"),
                    json.dumps(audit.get("gates", []), default=str),
                    audit.get("gates_passed"), audit.get("gates_total"),
                    json.dumps(audit.get("blocker_codes", [])),
                    json.dumps(audit.get("metrics", {}), default=str),
                    audit.get("metrics_source"),
                    audit.get("autonomy_score"), audit.get("autonomy_tier"),
                    audit.get("reason"),
                    1 if audit.get("human_approval_required") else 0,
                    audit.get("human_approved_by"),
                    now,
                ),
            )
        return True

    async def get_audit_trail(self, bot_id: str, limit: int = 20) -> list[dict]:
        return await self._db.fetchall(
            "SELECT * FROM promotion_audit_trail WHERE bot_id = ? ORDER BY id DESC LIMIT ?",
            (bot_id, limit),
        )

    # --- Jobs ---

    async def create_job(
        self,
        bot_id: str,
        job_type: str,
        payload: dict | None = None,
        priority: int = 0,
        max_attempts: int = 3,
    ) -> int:
        now = self._now()
        cursor = await self._db.execute(
            "INSERT INTO bot_jobs (bot_id, job_type, status, payload, priority, max_attempts, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (bot_id, _encode(job_type), JobStatus.QUEUED.value, json.dumps(payload or {}, default=str),
             priority, max_attempts, now, now),
        )
        return cursor.lastrowid

    async def get_job(self, job_id: int) -> dict | None:
        return await self._db.fetchone("SELECT * FROM bot_jobs WHERE id = ?", (job_id,))

    async def get_jobs(
        self,
        status: str | None = None,
        job_type: str | None = None,
        bot_id: str | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[dict]:
        sql = "SELECT * FROM bot_jobs WHERE 1=1"
        params: list = []
        if status:
            sql += " AND status = ?"
            params.append(_encode(status))
        if job_type:
            sql += " AND job_type = ?"
            params.append(_encode(job_type))
        if bot_id:
            sql += " AND bot_id = ?"
            params.append(bot_id)
        sql += " ORDER BY id DESC" if newest_first else " ORDER BY id"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return await self._db.fetchall(sql, tuple(params))

    async def update_job(self, job_id: int, patch: dict, expected_status: str | None = None) -> bool:
        """Patch a job. With ``expected_status`` the write only applies from that status."""
        unknown = set(patch) - _JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown job columns: {sorted(unknown)}")
        sets = ", ".join(f"{k} = ?" for k in patch)
        params = [_encode(v) for v in patch.values()] + [self._now(), job_id]
        sql = f"UPDATE bot_jobs SET {sets}, updated_at = ? WHERE id = ?"
        if expected_status:
            sql += " AND status = ?"
            params.append(_encode(expected_status))
        cursor = await self._db.execute(sql, tuple(params))
        return cursor.rowcount > 0

    async def get_stuck_jobs(self, threshold_minutes: float) -> list[dict]:
        """RUNNING jobs started more than ``threshold_minutes`` ago, with their bot's stage."""
        return await self._db.fetchall(
            "SELECT j.*, b.stage AS bot_stage FROM bot_jobs j JOIN bots b ON b.id = j.bot_id "
            "WHERE j.status = ? AND j.started_at IS NOT NULL AND j.started_at < ? ORDER BY j.id",
            (JobStatus.RUNNING.value, self._ago(threshold_minutes)),
        )

    async def log_job_state_transition(
        self,
        job_id: int,
        from_status: str | None,
        to_status: str,
        reason_code: str,
        reason: str | None = None,
        trace_id: str | None = None,
        metadata: dict | None = None,
        tx: Transaction | None = None,
    ) -> None:
        params = (
            job_id, _encode(from_status), _encode(to_status), reason_code, reason, trace_id,
            json.dumps(metadata, default=str) if metadata else None, self._now(),
        )
        sql = (
            "INSERT INTO job_run_events (job_id, from_status, to_status, reason_code, reason, trace_id, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        if tx is not None:
            await tx.execute(sql, params)
        else:
            await self._db.execute(sql, params)

    async def get_job_events(self, job_id: int) -> list[dict]:
        return await self._db.fetchall(
            "SELECT * FROM job_run_events WHERE job_id = ? ORDER BY id", (job_id,)
        )

    async def transition_job(
        self,
        job_id: int,
        from_status: JobStatus,
        to_status: JobStatus,
        reason_code: str,
        reason: str | None = None,
        result: dict | None = None,
        trace_id: str | None = None,
        metadata: dict | None = None,
    ) -> bool:
        """Conditionally move a job and write its audit row in one transaction.

        A job that has already left ``from_status`` is left untouched, which
        keeps terminal statuses immutable.
        """
        now = self._now()
        terminal = to_status.value in ("COMPLETED", "FAILED", "TIMEOUT", "CANCELLED")
        async with self._db.transaction() as tx:
            cursor = await tx.execute(
                "UPDATE bot_jobs SET status = ?, status_reason_code = ?, error_message = COALESCE(?, error_message), "
                "result = COALESCE(?, result), completed_at = CASE WHEN ? THEN ? ELSE completed_at END, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (to_status.value, reason_code, reason if to_status != JobStatus.COMPLETED else None,
                 json.dumps(result, default=str) if result is not None else None,
                 1 if terminal else 0, now, now, job_id, from_status.value),
            )
            if cursor.rowcount == 0:
                return False
            await self.log_job_state_transition(
                job_id, from_status.value, to_status.value, reason_code, reason,
                trace_id=trace_id, metadata=metadata, tx=tx,
            )
        return True

    async def claim_next_job(self, job_types: list[str], lease_owner: str) -> dict | None:
        """Atomically move the highest-priority QUEUED job of these types to RUNNING."""
        if not job_types:
            return None
        now = self._now()
        types = [_encode(t) for t in job_types]
        async with self._db.transaction() as tx:
            job = await tx.fetchone(
                "SELECT j.* FROM bot_jobs j JOIN bots b ON b.id = j.bot_id "
                f"WHERE j.status = ? AND j.job_type IN ({_placeholders(len(types))}) "
                "AND b.killed_at IS NULL AND b.archived_at IS NULL "
                "ORDER BY j.priority DESC, j.id LIMIT 1",
                (JobStatus.QUEUED.value, *types),
            )
            if not job:
                return None
            cursor = await tx.execute(
                "UPDATE bot_jobs SET status = ?, started_at = ?, last_heartbeat_at = ?, attempts = attempts + 1, "
                "lease_owner = ?, updated_at = ? WHERE id = ? AND status = ?",
                (JobStatus.RUNNING.value, now, now, lease_owner, now, job["id"], JobStatus.QUEUED.value),
            )
            if cursor.rowcount == 0:
                return None
            await self.log_job_state_transition(
                job["id"], JobStatus.QUEUED.value, JobStatus.RUNNING.value, "CLAIMED",
                metadata={"lease_owner": lease_owner}, tx=tx,
            )
            job.update(status=JobStatus.RUNNING.value, started_at=now, last_heartbeat_at=now,
                       attempts=job["attempts"] + 1, lease_owner=lease_owner)
        return job

    async def heartbeat_job(self, job_id: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE bot_jobs SET last_heartbeat_at = ? WHERE id = ? AND status = ?",
            (self._now(), job_id, JobStatus.RUNNING.value),
        )
        return cursor.rowcount > 0

    async def count_jobs(self, status: str, job_types: list[str] | None = None) -> int:
        sql = "SELECT COUNT(*) AS n FROM bot_jobs WHERE status = ?"
        params: list = [_encode(status)]
        if job_types:
            sql += f" AND job_type IN ({_placeholders(len(job_types))})"
            params.extend(_encode(t) for t in job_types)
        row = await self._db.fetchone(sql, tuple(params))
        return row["n"]

    async def queue_depth(self) -> dict[str, int]:
        rows = await self._db.fetchall(
            "SELECT job_type, COUNT(*) AS n FROM bot_jobs WHERE status = ? GROUP BY job_type",
            (JobStatus.QUEUED.value,),
        )
        return {r["job_type"]: r["n"] for r in rows}

    async def job_stats(self, bot_id: str, since_days: int = 7) -> dict[str, int]:
        rows = await self._db.fetchall(
            "SELECT status, COUNT(*) AS n FROM bot_jobs WHERE bot_id = ? AND created_at >= ? GROUP BY status",
            (bot_id, self._ago(since_days * 24 * 60)),
        )
        return {r["status"]: r["n"] for r in rows}

    async def has_open_job(self, bot_id: str, job_type: str) -> bool:
        row = await self._db.fetchone(
            "SELECT 1 FROM bot_jobs WHERE bot_id = ? AND job_type = ? AND status IN (?, ?) LIMIT 1",
            (bot_id, _encode(job_type), JobStatus.QUEUED.value, JobStatus.RUNNING.value),
        )
        return row is not None

    # --- Instances ---

    async def create_instance(
        self,
        bot_id: str,
        status: str = "PENDING",
        job_type: str = "RUNNER",
        account_id: str | None = None,
        last_heartbeat_at: str | None = None,
    ) -> int:
        now = self._now()
        cursor = await self._db.execute(
            "INSERT INTO bot_instances (bot_id, status, job_type, account_id, last_heartbeat_at, started_at, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (bot_id, _encode(status), job_type, account_id, last_heartbeat_at,
             now if _encode(status) == InstanceStatus.RUNNING.value else None, now, now),
        )
        return cursor.lastrowid

    async def get_instances(self, bot_id: str, status: str | None = None) -> list[dict]:
        sql = "SELECT * FROM bot_instances WHERE bot_id = ?"
        params: list = [bot_id]
        if status:
            sql += " AND status = ?"
            params.append(_encode(status))
        return await self._db.fetchall(sql + " ORDER BY id", tuple(params))

    async def get_running_instances(self) -> list[dict]:
        """RUNNING instances of bots that are neither killed nor archived."""
        return await self._db.fetchall(
            "SELECT i.*, b.stage AS bot_stage, b.name AS bot_name FROM bot_instances i "
            "JOIN bots b ON b.id = i.bot_id "
            "WHERE i.status = ? AND b.killed_at IS NULL AND b.archived_at IS NULL ORDER BY i.id",
            (InstanceStatus.RUNNING.value,),
        )

    async def heartbeat_instance(self, instance_id: int, activity_state: str | None = None) -> bool:
        now = self._now()
        cursor = await self._db.execute(
            "UPDATE bot_instances SET last_heartbeat_at = ?, activity_state = COALESCE(?, activity_state), "
            "updated_at = ? WHERE id = ? AND status = ?",
            (now, activity_state, now, instance_id, InstanceStatus.RUNNING.value),
        )
        return cursor.rowcount > 0

    async def restart_instance(self, instance_id: int, bot_id: str, reason: str) -> RestartResult:
        """Replace a stale RUNNING instance with a single PENDING one.

        The bot's RUNNING jobs are failed with TERMINATED_BY_SUPERVISOR. The
        whole operation is skipped if the stale instance is no longer
        RUNNING or another RUNNING instance exists.
        """
        now = self._now()
        async with self._db.transaction() as tx:
            stale = await tx.fetchone(
                "SELECT * FROM bot_instances WHERE id = ? AND bot_id = ?", (instance_id, bot_id)
            )
            if not stale or stale["status"] != InstanceStatus.RUNNING.value:
                return RestartResult(restarted=False, reason="not_running")

            other = await tx.fetchone(
                "SELECT id FROM bot_instances WHERE bot_id = ? AND status = ? AND id != ?",
                (bot_id, InstanceStatus.RUNNING.value, instance_id),
            )
            if other:
                return RestartResult(restarted=False, reason="other_instance_running")

            await tx.execute(
                "UPDATE bot_instances SET status = ?, stopped_at = ?, stop_reason = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (InstanceStatus.STOPPED.value, now, reason, now, instance_id, InstanceStatus.RUNNING.value),
            )

            running_jobs = await tx.fetchall(
                "SELECT id FROM bot_jobs WHERE bot_id = ? AND status = ?",
                (bot_id, JobStatus.RUNNING.value),
            )
            failed_ids = [j["id"] for j in running_jobs]
            for job_id in failed_ids:
                await tx.execute(
                    "UPDATE bot_jobs SET status = ?, completed_at = ?, status_reason_code = ?, error_message = ?, "
                    "updated_at = ? WHERE id = ? AND status = ?",
                    (JobStatus.FAILED.value, now, TERMINATED_BY_SUPERVISOR,
                     "Terminated by supervisor: instance restarted", now, job_id, JobStatus.RUNNING.value),
                )
                await self.log_job_state_transition(
                    job_id, JobStatus.RUNNING.value, JobStatus.FAILED.value, TERMINATED_BY_SUPERVISOR,
                    reason, metadata={"instance_id": instance_id}, tx=tx,
                )

            pending = await tx.fetchone(
                "SELECT id FROM bot_instances WHERE bot_id = ? AND status = ?",
                (bot_id, InstanceStatus.PENDING.value),
            )
            if pending:
                new_id = pending["id"]
            else:
                cursor = await tx.execute(
                    "INSERT INTO bot_instances (bot_id, status, job_type, job_id, account_id, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (bot_id, InstanceStatus.PENDING.value, stale["job_type"], stale["job_id"],
                     stale["account_id"], now, now),
                )
                new_id = cursor.lastrowid

        return RestartResult(restarted=True, reason=reason, new_instance_id=new_id, failed_job_ids=failed_ids)

    async def bots_needing_start(self) -> list[dict]:
        """Executable, trading-enabled bots with no RUNNING instance."""
        stages = [s.value for s in EXECUTABLE_STAGES]
        return await self._db.fetchall(
            "SELECT b.* FROM bots b "
            f"WHERE b.stage IN ({_placeholders(len(stages))}) AND b.is_trading_enabled = 1 "
            "AND b.killed_at IS NULL AND b.archived_at IS NULL "
            "AND NOT EXISTS (SELECT 1 FROM bot_instances i WHERE i.bot_id = b.id AND i.status = ?) "
            "ORDER BY b.id",
            (*stages, InstanceStatus.RUNNING.value),
        )

    async def start_instance(self, bot_id: str, account_id: str) -> StartResult:
        """Move the bot's PENDING instance (or a fresh one) to RUNNING.

        The heartbeat is left empty: only the process itself may report one.
        """
        now = self._now()
        stages = [s.value for s in EXECUTABLE_STAGES]
        async with self._db.transaction() as tx:
            bot = await tx.fetchone(
                "SELECT id FROM bots WHERE id = ? AND killed_at IS NULL AND archived_at IS NULL "
                f"AND is_trading_enabled = 1 AND stage IN ({_placeholders(len(stages))})",
                (bot_id, *stages),
            )
            if not bot:
                return StartResult(started=False, reason="not_eligible")
            running = await tx.fetchone(
                "SELECT id FROM bot_instances WHERE bot_id = ? AND status = ?",
                (bot_id, InstanceStatus.RUNNING.value),
            )
            if running:
                return StartResult(started=False, reason="already_running", instance_id=running["id"])

            pending = await tx.fetchone(
                "SELECT id FROM bot_instances WHERE bot_id = ? AND status = ? ORDER BY id DESC LIMIT 1",
                (bot_id, InstanceStatus.PENDING.value),
            )
            if pending:
                await tx.execute(
                    "UPDATE bot_instances SET status = ?, account_id = ?, started_at = ?, last_heartbeat_at = NULL, "
                    "updated_at = ? WHERE id = ? AND status = ?",
                    (InstanceStatus.RUNNING.value, account_id, now, now, pending["id"],
                     InstanceStatus.PENDING.value),
                )
                instance_id = pending["id"]
            else:
                cursor = await tx.execute(
                    "INSERT INTO bot_instances (bot_id, status, job_type, account_id, started_at, "
                    "created_at, updated_at) VALUES (?, ?, 'RUNNER', ?, ?, ?, ?)",
                    (bot_id, InstanceStatus.RUNNING.value, account_id, now, now, now),
                )
                instance_id = cursor.lastrowid
        return StartResult(started=True, instance_id=instance_id)

    async def count_supervisor_restarts(self, bot_id: str, since_days: int = 7) -> int:
        row = await self._db.fetchone(
            "SELECT COUNT(*) AS n FROM bot_instances WHERE bot_id = ? AND status = ? "
            "AND stop_reason LIKE 'supervisor:%' AND stopped_at >= ?",
            (bot_id, InstanceStatus.STOPPED.value, self._ago(since_days * 24 * 60)),
        )
        return row["n"]

    # --- Backtests and generations ---

    async def create_backtest_session(
        self, bot_id: str, job_id: int | None, generation_number: int, kind: str = BASELINE_SESSION
    ) -> int:
        cursor = await self._db.execute(
            "INSERT INTO backtest_sessions (bot_id, job_id, generation_number, kind, status, created_at) "
            "VALUES (?, ?, ?, ?, 'RUNNING', ?)",
            (bot_id, job_id, generation_number, kind, self._now()),
        )
        return cursor.lastrowid

    async def complete_backtest_session(
        self, session_id: int, metrics: BotMetrics | None, error: str | None = None
    ) -> None:
        status = "COMPLETED" if metrics is not None and not error else "FAILED"
        await self._db.execute(
            "UPDATE backtest_sessions SET status = ?, metrics = ?, error_message = ?, completed_at = ? "
            "WHERE id = ? AND status = 'RUNNING'",
            (status, metrics.to_json() if metrics else None, error, self._now(), session_id),
        )

    async def recent_sessions(self, bot_id: str, limit: int = 3) -> list[dict]:
        """Latest completed sessions, newest first, metrics decoded."""
        rows = await self._db.fetchall(
            "SELECT * FROM backtest_sessions WHERE bot_id = ? AND kind = ? AND status = 'COMPLETED' "
            "ORDER BY completed_at DESC, id DESC LIMIT ?",
            (bot_id, BASELINE_SESSION, limit),
        )
        for r in rows:
            r["metrics"] = BotMetrics.from_json(r["metrics"])
        return rows

    async def session_counts(self, bot_id: str) -> dict[str, int]:
        rows = await self._db.fetchall(
            "SELECT status, COUNT(*) AS n FROM backtest_sessions WHERE bot_id = ? AND kind = ? GROUP BY status",
            (bot_id, BASELINE_SESSION),
        )
        return {r["status"]: r["n"] for r in rows}

    async def get_generations(self, bot_id: str, limit: int = 10) -> list[dict]:
        """Newest first."""
        return await self._db.fetchall(
            "SELECT * FROM bot_generations WHERE bot_id = ? ORDER BY generation_number DESC LIMIT ?",
            (bot_id, limit),
        )

    async def create_generation(
        self,
        bot_id: str,
        strategy_config: dict,
        parent_generation: int | None,
        reason_code: str,
    ) -> int:
        """Append a generation and make it the bot's current config. Returns its number."""
        now = self._now()
        async with self._db.transaction() as tx:
            row = await tx.fetchone(
                "SELECT COALESCE(MAX(generation_number), 0) AS n FROM bot_generations WHERE bot_id = ?",
                (bot_id,),
            )
            number = row["n"] + 1
            config_json = json.dumps(strategy_config, default=str)
            await tx.execute(
                "INSERT INTO bot_generations (bot_id, generation_number, parent_generation_number, "
                "mutation_reason_code, strategy_config, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (bot_id, number, parent_generation, reason_code, config_json, now),
            )
            await tx.execute(
                "UPDATE bots SET current_generation = ?, strategy_config = ?, updated_at = ? WHERE id = ?",
                (number, config_json, now, bot_id),
            )
        return number

    # --- Autonomy scores ---

    async def upsert_autonomy_score(self, bot_id: str, score: float, tier: str, dimensions: dict,
                                    breakdown: dict) -> None:
        await self._db.execute(
            "INSERT INTO autonomy_scores (bot_id, score, tier, data_reliability, decision_quality, risk_discipline, "
            "execution_health, supervisor_trust, breakdown, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(bot_id) DO UPDATE SET score = excluded.score, tier = excluded.tier, "
            "data_reliability = excluded.data_reliability, decision_quality = excluded.decision_quality, "
            "risk_discipline = excluded.risk_discipline, execution_health = excluded.execution_health, "
            "supervisor_trust = excluded.supervisor_trust, breakdown = excluded.breakdown, "
            "updated_at = excluded.updated_at",
            (
                bot_id, score, tier,
                dimensions["data_reliability"], dimensions["decision_quality"], dimensions["risk_discipline"],
                dimensions["execution_health"], dimensions["supervisor_trust"],
                json.dumps(breakdown, default=str), self._now(),
            ),
        )

    async def get_autonomy_score(self, bot_id: str) -> dict | None:
        return await self._db.fetchone("SELECT * FROM autonomy_scores WHERE bot_id = ?", (bot_id,))
