"""Instance supervisor — keeps each bot's trading process alive.

Each tick:
  1. Stale RUNNING instances are restarted under a per-bot lock. A bot
     whose restarts keep failing trips its breaker; a LIVE bot with an
     open breaker is killed, lower stages are left blocked until the
     breaker cools down.
  2. Jobs RUNNING far beyond any timeout are failed. On a LIVE bot this
     is treated as an invariant breach and the bot is killed.
  3. Executable bots with no RUNNING instance get one started.

A restart does not close the breaker; only a heartbeat newer than the
restart does.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

import aiosqlite
import structlog

from botfleet.shell.activity import ActivityLogger
from botfleet.shell.clock import Clock, from_db, utcnow
from botfleet.shell.config import SupervisorConfig
from botfleet.shell.contract import (
    LIVE_INSTANCE_UNRECOVERABLE,
    LIVE_STUCK_JOB,
    RUNNER,
    STUCK_JOB,
    JobStatus,
    Stage,
)
from botfleet.shell.locks import DistributedLock
from botfleet.shell.storage import Storage
from botfleet.supervision.resilience import breaker_key
from botfleet.supervision.state import FleetState

log = structlog.get_logger()


class RunnerLauncher(Protocol):
    """Starts the actual trading process for an instance that was moved to RUNNING."""

    async def start(self, instance_id: int, bot: dict, account_id: str) -> None: ...


@dataclass
class SupervisorReport:
    checked: int = 0
    restarted: int = 0
    restart_failures: int = 0
    confirmed: int = 0
    blocked: int = 0
    killed: int = 0
    stuck_jobs_failed: int = 0
    auto_started: int = 0


class InstanceSupervisor:
    def __init__(
        self,
        storage: Storage,
        locks: DistributedLock,
        state: FleetState,
        activity: ActivityLogger,
        notifier=None,
        config: SupervisorConfig | None = None,
        launcher: RunnerLauncher | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._storage = storage
        self._locks = locks
        self._breakers = state.instance_breakers
        self._activity = activity
        self._notifier = notifier
        self._config = config or SupervisorConfig()
        self._launcher = launcher
        self._clock = clock

    async def check(self) -> SupervisorReport:
        report = SupervisorReport()
        await self._check_instances(report)
        await self._fail_stuck_jobs(report)
        if self._config.auto_start:
            await self._auto_start(report)
        if report.restarted or report.killed or report.auto_started or report.restart_failures:
            log.info("supervisor.tick", **vars(report))
        return report

    def stale_after(self, job_type: str) -> timedelta:
        if job_type == RUNNER:
            return timedelta(minutes=self._config.runner_stale_minutes)
        return timedelta(minutes=self._config.job_stale_minutes)

    # --- Stale instances ---

    async def _check_instances(self, report: SupervisorReport) -> None:
        now = self._clock()
        for inst in await self._storage.get_running_instances():
            report.checked += 1
            bot_id = inst["bot_id"]
            key = breaker_key(bot_id)
            heartbeat = from_db(inst["last_heartbeat_at"])
            last_seen = heartbeat or from_db(inst["started_at"])

            if last_seen is not None and now - last_seen <= self.stale_after(inst["job_type"]):
                if self._breakers.confirm(key, heartbeat):
                    report.confirmed += 1
                    await self._activity.instance(
                        f"Bot {bot_id} heartbeat confirmed after restart", bot_id=bot_id,
                    )
                continue

            if self._breakers.is_awaiting_confirmation(key):
                # The previous restart never produced a heartbeat
                self._breakers.record_failure(key)

            if self._breakers.is_open(key):
                if inst["bot_stage"] == Stage.LIVE.value:
                    killed = await self._kill(
                        bot_id, LIVE_INSTANCE_UNRECOVERABLE,
                        f"LIVE instance {inst['id']} unrecoverable after "
                        f"{self._breakers.get(key).failures} failed restarts",
                        {"instance_id": inst["id"], "last_heartbeat_at": inst["last_heartbeat_at"]},
                    )
                    report.killed += int(killed)
                else:
                    report.blocked += 1
                    log.warning("supervisor.restart_blocked", bot_id=bot_id, stage=inst["bot_stage"],
                                failures=self._breakers.get(key).failures)
                    await self._activity.instance(
                        f"Restart of bot {bot_id} blocked: circuit breaker open",
                        severity="warning", bot_id=bot_id,
                        detail={"instance_id": inst["id"], "failures": self._breakers.get(key).failures},
                    )
                continue

            await self._restart(inst, report)

    async def _restart(self, inst: dict, report: SupervisorReport) -> None:
        bot_id = inst["bot_id"]
        key = breaker_key(bot_id)
        async with self._locks.hold(f"instance:{bot_id}", self._config.lock_ttl_seconds) as lock:
            if not lock.may_proceed:
                log.debug("supervisor.lock_busy", bot_id=bot_id)
                return
            if lock.degraded:
                log.warning("supervisor.lock_degraded", bot_id=bot_id)
            try:
                result = await self._storage.restart_instance(
                    inst["id"], bot_id, reason="supervisor:stale_heartbeat",
                )
            except (aiosqlite.Error, OSError) as e:
                state = self._breakers.record_failure(key)
                report.restart_failures += 1
                log.error("supervisor.restart_failed", bot_id=bot_id, instance_id=inst["id"],
                          failures=state.failures, error=str(e))
                await self._activity.instance(
                    f"Restart of bot {bot_id} failed ({state.failures}/{self._breakers.threshold}): {e}",
                    severity="warning", bot_id=bot_id,
                )
                return

        if not result.restarted:
            log.info("supervisor.restart_skipped", bot_id=bot_id, reason=result.reason)
            return

        self._breakers.await_confirmation(key, self._clock())
        report.restarted += 1
        log.info("supervisor.restarted", bot_id=bot_id, old_instance=inst["id"],
                 new_instance=result.new_instance_id, failed_jobs=result.failed_job_ids)
        await self._activity.instance(
            f"Restarted stale instance {inst['id']} of bot {bot_id}",
            severity="warning", bot_id=bot_id,
            detail={"new_instance_id": result.new_instance_id, "failed_job_ids": result.failed_job_ids},
        )

    # --- Stuck jobs ---

    async def _fail_stuck_jobs(self, report: SupervisorReport) -> None:
        threshold = self._config.stuck_job_minutes
        for job in await self._storage.get_stuck_jobs(threshold):
            reason = f"Job stuck RUNNING for more than {threshold}m; failed by supervisor"
            moved = await self._storage.transition_job(
                job["id"], JobStatus.RUNNING, JobStatus.FAILED, STUCK_JOB, reason,
            )
            if not moved:
                continue
            report.stuck_jobs_failed += 1
            log.warning("supervisor.stuck_job_failed", job_id=job["id"], bot_id=job["bot_id"],
                        job_type=job["job_type"])
            await self._activity.job(
                f"Stuck job {job['id']} ({job['job_type']}) failed", severity="warning",
                bot_id=job["bot_id"], detail={"job_id": job["id"], "reason_code": STUCK_JOB},
            )
            if job["bot_stage"] == Stage.LIVE.value:
                killed = await self._kill(
                    job["bot_id"], LIVE_STUCK_JOB, f"LIVE bot had job {job['id']} stuck beyond {threshold}m",
                    {"job_id": job["id"], "job_type": job["job_type"]},
                )
                report.killed += int(killed)

    # --- Auto-start ---

    def _resolve_account(self, bot: dict) -> str | None:
        if bot["default_account_id"]:
            return bot["default_account_id"]
        if bot["stage"] != Stage.LIVE.value and self._config.paper_account_id:
            return self._config.paper_account_id
        return None

    async def _auto_start(self, report: SupervisorReport) -> None:
        for bot in await self._storage.bots_needing_start():
            bot_id = bot["id"]
            if self._breakers.is_open(breaker_key(bot_id)):
                continue
            account_id = self._resolve_account(bot)
            if not account_id:
                log.info("supervisor.no_account", bot_id=bot_id, stage=bot["stage"])
                continue

            async with self._locks.hold(f"instance:{bot_id}", self._config.lock_ttl_seconds) as lock:
                if not lock.may_proceed:
                    continue
                try:
                    result = await self._storage.start_instance(bot_id, account_id)
                except aiosqlite.IntegrityError:
                    # Another process won the race for the single RUNNING slot
                    continue
            if not result.started:
                continue

            report.auto_started += 1
            log.info("supervisor.auto_started", bot_id=bot_id, instance_id=result.instance_id,
                     account_id=account_id)
            await self._activity.instance(
                f"Started instance {result.instance_id} for {bot['stage']} bot {bot_id}", bot_id=bot_id,
            )
            if self._launcher:
                try:
                    await self._launcher.start(result.instance_id, bot, account_id)
                except Exception as e:
                    self._breakers.record_failure(breaker_key(bot_id))
                    log.error("supervisor.launch_failed", bot_id=bot_id, instance_id=result.instance_id,
                              error=str(e))

    # --- Kill ---

    async def _kill(self, bot_id: str, reason_code: str, reason: str, metadata: dict) -> bool:
        result = await self._storage.kill_bot(bot_id, actor="supervisor", reason_code=reason_code,
                                              reason=reason, metadata=metadata)
        if not result.killed:
            return False
        self._breakers.reset(breaker_key(bot_id))
        log.critical("supervisor.bot_killed", bot_id=bot_id, reason_code=reason_code, reason=reason)
        await self._activity.instance(
            f"Bot {bot_id} killed: {reason}", severity="critical", title="Proactive kill",
            bot_id=bot_id, detail={"reason_code": reason_code, **metadata},
        )
        if self._notifier:
            await self._notifier.bot_killed(bot_id, reason_code, reason)
        return True
