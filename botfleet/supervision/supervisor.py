"""Worker supervision — every periodic worker runs through ``WorkerSupervisor.run``.

A tick is skipped when this process is not the leader, when the backend
circuit is open, or while the worker is backing off. A failing worker
backs off exponentially, alerts once it keeps failing, and trips the
backend circuit on connectivity errors. Nothing a worker raises escapes
``run``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from botfleet.shell.activity import ActivityLogger
from botfleet.shell.clock import Clock, utcnow
from botfleet.supervision.leader import LeaderElector
from botfleet.supervision.resilience import is_transient_error
from botfleet.supervision.state import FleetState

log = structlog.get_logger()

WorkerFn = Callable[[], Awaitable[object]]


@dataclass
class WorkerStatus:
    active: bool = False
    runs: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_error: str = ""
    last_result: object = None


class WorkerSupervisor:
    def __init__(
        self,
        leader: LeaderElector,
        state: FleetState,
        activity: ActivityLogger | None = None,
        notifier=None,
        critical_threshold: int = 5,
        clock: Clock = utcnow,
    ) -> None:
        self._leader = leader
        self._state = state
        self._activity = activity
        self._notifier = notifier
        self._critical_threshold = critical_threshold
        self._clock = clock
        self._workers: dict[str, WorkerStatus] = {}

    def status(self, name: str) -> WorkerStatus:
        return self._workers.setdefault(name, WorkerStatus())

    async def run(self, name: str, fn: WorkerFn) -> object:
        """Run one tick of worker ``name``. Returns fn's result, or None if skipped/failed."""
        if not self._leader.is_leader():
            return None
        if self._state.backend.is_circuit_open():
            log.info("worker.skipped_backend_circuit", worker=name)
            return None
        if self._state.backoff.should_skip(name):
            log.debug("worker.skipped_backoff", worker=name)
            return None

        status = self.status(name)
        status.active = True
        status.runs += 1
        try:
            result = await fn()
        except Exception as e:
            await self._on_failure(name, status, e)
            return None
        finally:
            status.active = False

        status.last_success_at = self._clock()
        status.last_error = ""
        status.last_result = result
        if self._state.backoff.get(name).failures:
            log.info("worker.recovered", worker=name, failures=self._state.backoff.get(name).failures)
        self._state.backoff.record_success(name)
        return result

    async def _on_failure(self, name: str, status: WorkerStatus, error: Exception) -> None:
        status.last_failure_at = self._clock()
        status.last_error = str(error)
        backoff = self._state.backoff.record_failure(name, error)
        log.error(
            "worker.failed", worker=name, failures=backoff.failures,
            next_retry_at=backoff.next_retry_at.isoformat() if backoff.next_retry_at else None,
            error=str(error), exc_info=True,
        )

        if is_transient_error(error):
            self._state.backend.open_circuit(f"{name}: {error}")

        if backoff.failures >= self._critical_threshold:
            summary = f"Worker {name} failed {backoff.failures} times in a row: {error}"
            if self._activity:
                await self._activity.worker(
                    summary, severity="critical",
                    detail={"worker": name, "failures": backoff.failures, "error": str(error)},
                )
            if self._notifier:
                await self._notifier.worker_critical(name, backoff.failures, str(error))

    def snapshot(self) -> dict[str, dict]:
        backoff = self._state.backoff.snapshot()
        names = set(self._workers) | set(backoff)
        return {
            name: {
                "active": self.status(name).active,
                "runs": self.status(name).runs,
                "last_success_at": (self.status(name).last_success_at.isoformat()
                                    if self.status(name).last_success_at else None),
                "last_error": self.status(name).last_error,
                "failures": backoff.get(name, {}).get("failures", 0),
                "next_retry_at": backoff.get(name, {}).get("next_retry_at"),
            }
            for name in sorted(names)
        }


class WorkerScheduler:
    """Registers supervised workers as APScheduler interval jobs.

    ``max_instances=1`` keeps ticks of the same worker from overlapping;
    a tick still running when the next one is due is coalesced.
    """

    def __init__(self, scheduler: AsyncIOScheduler, supervisor: WorkerSupervisor) -> None:
        self._scheduler = scheduler
        self._supervisor = supervisor
        self._workers: dict[str, tuple[WorkerFn, float]] = {}
        self._running = False

    def register(self, name: str, fn: WorkerFn, interval_seconds: float) -> None:
        self._workers[name] = (fn, interval_seconds)
        # Listed in status before its first tick
        self._supervisor.status(name)

    @property
    def names(self) -> list[str]:
        return list(self._workers)

    @property
    def running(self) -> bool:
        return self._running

    def start_workers(self) -> None:
        if self._running:
            return
        for name, (fn, interval) in self._workers.items():
            self._scheduler.add_job(
                self._supervisor.run, IntervalTrigger(seconds=interval),
                args=[name, fn], id=f"worker:{name}", name=name,
                max_instances=1, coalesce=True, replace_existing=True,
                next_run_time=datetime.now() + timedelta(seconds=2),
            )
        self._running = True
        log.info("workers.started", workers=self.names)

    def stop_workers(self) -> None:
        """Synchronously unschedule every worker job."""
        if not self._running:
            return
        for name in self._workers:
            job = self._scheduler.get_job(f"worker:{name}")
            if job:
                job.remove()
        self._running = False
        log.info("workers.stopped", workers=self.names)
