"""Job queue consumers — claim queued work and run it within the governor's slots.

Three supervised workers share this class: ``backtest_consumer``
(BACKTESTER and MATRIX_RUN), ``improve_consumer`` and ``evolve_consumer``.
A tick claims as many jobs as there are free slots, runs them
concurrently with a heartbeat each, and completes them with a
conditional update: a job the health monitor already timed out keeps
its TIMEOUT status.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import aiosqlite
import structlog

from botfleet.jobs.executors import (
    BacktestExecutor,
    Evolver,
    UnconfiguredBacktestExecutor,
    UnconfiguredEvolver,
)
from botfleet.jobs.payloads import (
    BacktestPayload,
    EvolvePayload,
    ImprovePayload,
    JobPayload,
    MatrixPayload,
    PayloadError,
    decode_payload,
)
from botfleet.shell.activity import ActivityLogger
from botfleet.shell.clock import Clock, to_db, utcnow
from botfleet.shell.contract import (
    BASELINE_SESSION,
    EVOLUTION,
    IMPROVEMENT,
    MATRIX_CELL_SESSION,
    BotMetrics,
    JobStatus,
    JobType,
)
from botfleet.shell.storage import Storage
from botfleet.supervision.governor import HEAVY_JOB_TYPES, LIGHT_JOB_TYPES, ConcurrencyGovernor
from botfleet.supervision.resilience import is_transient_error
from botfleet.supervision.state import FleetState

log = structlog.get_logger()


@dataclass
class JobResult:
    success: bool
    result: dict = field(default_factory=dict)
    error: str = ""


Handler = Callable[[dict, dict, JobPayload], Awaitable[JobResult]]


class JobQueueConsumer:
    def __init__(
        self,
        storage: Storage,
        governor: ConcurrencyGovernor,
        state: FleetState,
        activity: ActivityLogger,
        promotion=None,
        executor: BacktestExecutor | None = None,
        evolver: Evolver | None = None,
        node_id: str = "local",
        heartbeat_seconds: float = 30.0,
        clock: Clock = utcnow,
    ) -> None:
        self._storage = storage
        self._governor = governor
        self._breakers = state.pipeline_breakers
        self._activity = activity
        self._promotion = promotion
        self._executor = executor or UnconfiguredBacktestExecutor()
        self._evolver = evolver or UnconfiguredEvolver()
        self._node_id = node_id
        self._heartbeat_seconds = heartbeat_seconds
        self._clock = clock

    # --- Workers ---

    async def consume_backtests(self) -> int:
        return await self._consume(
            "backtest", [JobType.BACKTESTER.value, JobType.MATRIX_RUN.value], self._run_backtest,
        )

    async def consume_improvements(self) -> int:
        return await self._consume("improve", [JobType.IMPROVING.value], self._run_improve)

    async def consume_evolutions(self) -> int:
        return await self._consume("evolve", [JobType.EVOLVING.value], self._run_evolve)

    async def queue_baseline(self, bot_id: str, reason: str, generation: int | None = None) -> int:
        """Queue the backtest that measures a freshly produced generation."""
        job_id = await self._storage.create_job(
            bot_id, JobType.BACKTESTER.value, {"reason": reason, "generation": generation}, priority=1,
        )
        log.info("jobs.baseline_queued", bot_id=bot_id, job_id=job_id, generation=generation)
        return job_id

    # --- Claiming ---

    async def _free_slots(self, job_types: list[str]) -> dict[str, int]:
        """Free slots per job type, shared within the heavy and light classes."""
        heavy = [t for t in job_types if t in HEAVY_JOB_TYPES]
        light = [t for t in job_types if t not in HEAVY_JOB_TYPES]
        slots = self._governor.slots()
        free: dict[str, int] = {}
        if heavy:
            running = await self._storage.count_jobs(JobStatus.RUNNING.value, list(HEAVY_JOB_TYPES))
            free.update({t: slots.heavy - running for t in heavy})
        if light:
            running = await self._storage.count_jobs(JobStatus.RUNNING.value, list(LIGHT_JOB_TYPES))
            free.update({t: slots.light - running for t in light})
        return free

    async def _consume(self, pipeline: str, job_types: list[str], handler: Handler) -> int:
        breaker = f"pipeline:{pipeline}"
        if self._breakers.is_open(breaker):
            log.info("jobs.pipeline_open", pipeline=pipeline)
            return 0

        free = await self._free_slots(job_types)
        claimed: list[dict] = []
        while True:
            claimable = [t for t in job_types if free.get(t, 0) > 0]
            if not claimable:
                break
            job = await self._storage.claim_next_job(claimable, self._node_id)
            if not job:
                break
            claimed.append(job)
            in_heavy = job["job_type"] in HEAVY_JOB_TYPES
            for t in job_types:
                if (t in HEAVY_JOB_TYPES) == in_heavy:
                    free[t] -= 1

        if claimed:
            log.info("jobs.claimed", pipeline=pipeline, count=len(claimed))
            results = await asyncio.gather(
                *(self._execute(job, handler, breaker) for job in claimed), return_exceptions=True,
            )
            # Infrastructure failures belong to the worker's backoff and the backend circuit
            for error in results:
                if isinstance(error, BaseException):
                    raise error
        return len(claimed)

    # --- Execution ---

    async def _heartbeat(self, job_id: int) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            try:
                if not await self._storage.heartbeat_job(job_id):
                    return
            except (aiosqlite.Error, OSError) as e:
                log.warning("jobs.heartbeat_failed", job_id=job_id, error=str(e))

    async def _execute(self, job: dict, handler: Handler, breaker: str) -> None:
        job_id = job["id"]
        try:
            payload = decode_payload(job["job_type"], job["payload"])
        except PayloadError as e:
            await self._finish(job, JobResult(False, error=str(e)), "INVALID_PAYLOAD")
            return

        bot = await self._storage.get_bot(job["bot_id"])
        if bot is None:
            await self._finish(job, JobResult(False, error="Bot not found"), "BOT_NOT_FOUND")
            return

        heartbeat = asyncio.create_task(self._heartbeat(job_id))
        try:
            result = await handler(job, bot, payload)
        except Exception as e:
            if is_transient_error(e):
                log.warning("jobs.infrastructure_error", job_id=job_id, job_type=job["job_type"], error=str(e))
                raise
            state = self._breakers.record_failure(breaker)
            log.error("jobs.executor_error", job_id=job_id, job_type=job["job_type"], breaker=breaker,
                      failures=state.failures, error=str(e), exc_info=True)
            await self._finish(job, JobResult(False, error=f"{type(e).__name__}: {e}"), "EXECUTOR_ERROR")
            return
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        self._breakers.reset(breaker)
        await self._finish(job, result, "COMPLETED" if result.success else "JOB_FAILED")

    async def _finish(self, job: dict, result: JobResult, reason_code: str) -> None:
        to_status = JobStatus.COMPLETED if result.success else JobStatus.FAILED
        moved = await self._storage.transition_job(
            job["id"], JobStatus.RUNNING, to_status, reason_code,
            reason=result.error or None, result=result.result,
        )
        if not moved:
            current = await self._storage.get_job(job["id"])
            log.warning("jobs.completion_discarded", job_id=job["id"], wanted=to_status.value,
                        status=current["status"] if current else None)
            return
        if result.success:
            log.info("jobs.completed", job_id=job["id"], job_type=job["job_type"], bot_id=job["bot_id"])
        else:
            log.warning("jobs.failed", job_id=job["id"], job_type=job["job_type"], bot_id=job["bot_id"],
                        error=result.error)
            await self._activity.job(
                f"Job {job['id']} ({job['job_type']}) failed: {result.error}", severity="warning",
                bot_id=job["bot_id"], detail={"job_id": job["id"], "reason_code": reason_code},
            )

    # --- Handlers ---

    async def _backtest_once(
        self, bot: dict, job_id: int, payload: BacktestPayload, kind: str = BASELINE_SESSION
    ) -> tuple[int, BotMetrics | None, str]:
        generation = bot["current_generation"]
        session_id = await self._storage.create_backtest_session(bot["id"], job_id, generation, kind)
        outcome = await self._executor.execute(session_id, bot, payload)
        metrics = outcome.metrics if outcome.success else None
        if metrics is not None:
            metrics.backtest_completed = True
        await self._storage.complete_backtest_session(session_id, metrics, None if metrics else outcome.error)
        return session_id, metrics, outcome.error

    async def _run_backtest(self, job: dict, bot: dict, payload: JobPayload) -> JobResult:
        if isinstance(payload, MatrixPayload):
            return await self._run_matrix(job, bot, payload)

        session_id, metrics, error = await self._backtest_once(bot, job["id"], payload)
        if metrics is None:
            return JobResult(False, {"session_id": session_id}, error or "Backtest produced no metrics")
        await self._storage.record_bot_metrics(bot["id"], metrics)
        return JobResult(True, {"session_id": session_id, "sharpe": metrics.sharpe,
                                "total_trades": metrics.total_trades})

    async def _run_matrix(self, job: dict, bot: dict, payload: MatrixPayload) -> JobResult:
        if not payload.cells:
            return JobResult(False, error="Matrix run has no cells")
        results = []
        for cell in payload.cells:
            _, metrics, _ = await self._backtest_once(
                bot, job["id"], BacktestPayload(reason="matrix", params=dict(cell)), MATRIX_CELL_SESSION,
            )
            if metrics is not None:
                results.append((cell, metrics))
        if not results:
            return JobResult(False, error="Every matrix cell failed")

        best_cell, best = max(results, key=lambda r: r[1].sharpe)
        await self._storage.update_bot(bot["id"], {
            "matrix_best_cell": best.to_json(),
            "matrix_updated_at": to_db(self._clock()),
        })
        return JobResult(True, {"cells": len(payload.cells), "completed": len(results),
                                "best_cell": best_cell, "best_sharpe": best.sharpe})

    async def _apply_generation(self, bot: dict, config: dict | None, reason_code: str) -> JobResult:
        if not config:
            return JobResult(False, error="Evolver returned no strategy config")
        generation = await self._storage.create_generation(
            bot["id"], config, parent_generation=bot["current_generation"], reason_code=reason_code,
        )
        baseline_job = await self.queue_baseline(bot["id"], reason_code.lower(), generation)
        await self._activity.autonomy(
            f"{bot['name']} generation {generation} created ({reason_code})", bot_id=bot["id"],
            detail={"generation": generation, "baseline_job_id": baseline_job},
        )
        return JobResult(True, {"generation": generation, "baseline_job_id": baseline_job})

    async def _run_improve(self, job: dict, bot: dict, payload: ImprovePayload) -> JobResult:
        outcome = await self._evolver.improve(bot, payload)
        if not outcome.success:
            return JobResult(False, error=outcome.error or "Improvement failed")
        return await self._apply_generation(bot, outcome.strategy_config, outcome.reason_code or IMPROVEMENT)

    async def _run_evolve(self, job: dict, bot: dict, payload: EvolvePayload) -> JobResult:
        if self._promotion is not None and await self._promotion.gates_pass(bot):
            log.info("jobs.evolution_skipped", bot_id=bot["id"], reason="gates_passing")
            return JobResult(True, {"skipped": "gates_passing"})
        outcome = await self._evolver.evolve(bot, payload)
        if not outcome.success:
            return JobResult(False, error=outcome.error or "Evolution failed")
        return await self._apply_generation(bot, outcome.strategy_config, outcome.reason_code or EVOLUTION)
