"""Bot Fleet Engine — supervision and promotion for a fleet of trading bots.

Main entry point. Wires all components, manages lifecycle, runs the supervised workers.

Startup: load config -> connect DB -> build components -> elect leader -> start workers -> start API/Telegram
Shutdown: stop workers -> release lease -> stop API -> stop Telegram -> close DB
"""

from __future__ import annotations

import asyncio
import os
import signal
from datetime import datetime, timedelta
from pathlib import Path

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from botfleet.api.server import ApiServer, create_app as create_api_app
from botfleet.autonomy.loop import AutonomyLoop
from botfleet.autonomy.promotion import PromotionStateMachine
from botfleet.autonomy.scorer import AutonomyScorer
from botfleet.jobs.consumer import JobQueueConsumer
from botfleet.jobs.executors import BacktestExecutor, Evolver
from botfleet.shell.activity import ActivityLogger
from botfleet.shell.config import Config, load_config
from botfleet.shell.database import Database
from botfleet.shell.locks import DistributedLock
from botfleet.shell.storage import Storage
from botfleet.supervision.governor import ConcurrencyGovernor
from botfleet.supervision.instance_supervisor import InstanceSupervisor, RunnerLauncher
from botfleet.supervision.job_monitor import JobHealthMonitor
from botfleet.supervision.leader import LeaderElector, LeaseLeaderElector, SingleInstanceLeader
from botfleet.supervision.state import FleetState
from botfleet.supervision.supervisor import WorkerScheduler, WorkerSupervisor
from botfleet.telegram.bot import TelegramBot
from botfleet.telegram.commands import BotCommands
from botfleet.telegram.notifications import Notifier
from botfleet.utils.logging import setup_logging

log = structlog.get_logger()


class FleetEngine:
    """Main application — owns every component and the worker lifecycle."""

    def __init__(
        self,
        config: Config | None = None,
        executor: BacktestExecutor | None = None,
        evolver: Evolver | None = None,
        launcher: RunnerLauncher | None = None,
    ) -> None:
        self._config = config
        self._executor = executor
        self._evolver = evolver
        self._launcher = launcher
        self._db: Database | None = None
        self._storage: Storage | None = None
        self._activity: ActivityLogger | None = None
        self._state: FleetState | None = None
        self._leader: LeaderElector | None = None
        self._governor: ConcurrencyGovernor | None = None
        self._promotion: PromotionStateMachine | None = None
        self._supervisor: WorkerSupervisor | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._workers: WorkerScheduler | None = None
        self._notifier: Notifier | None = None
        self._telegram: TelegramBot | None = None
        self._api: ApiServer | None = None
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Full startup sequence. Returns once the engine is running."""
        log.info("engine.starting")

        # 1. Config
        if self._config is None:
            self._config = load_config()
        config = self._config
        setup_logging(config.log_level, node_id=config.leader.node_id)
        log.info("config.loaded", leader_mode=config.leader.mode, node_id=config.leader.node_id)

        # 2. Database
        self._db = Database(config.db_path)
        await self._db.connect()
        self._storage = Storage(self._db)

        # 2b. Activity logger (must be before any events)
        self._activity = ActivityLogger(self._db)

        # 3. Shared state and supervision primitives
        self._state = FleetState.from_config(config)
        self._governor = ConcurrencyGovernor(config.governor)
        self._notifier = Notifier(chat_id=config.telegram.chat_id)
        locks = DistributedLock(self._db)

        # 4. Domain components
        scorer = AutonomyScorer(
            self._storage, self._state.instance_breakers,
            runner_stale_minutes=config.supervisor.runner_stale_minutes,
        )
        self._promotion = PromotionStateMachine(
            self._storage, self._activity, self._state, self._notifier, config.promotion,
        )
        loop = AutonomyLoop(self._storage, scorer, self._promotion, config.autonomy)
        monitor = JobHealthMonitor(self._storage, self._activity, config.timeouts)
        instances = InstanceSupervisor(
            self._storage, locks, self._state, self._activity, self._notifier,
            config.supervisor, launcher=self._launcher,
        )
        consumer = JobQueueConsumer(
            self._storage, self._governor, self._state, self._activity, self._promotion,
            executor=self._executor, evolver=self._evolver, node_id=config.leader.node_id,
        )

        # 5. Worker supervision
        self._leader = self._build_leader()
        self._supervisor = WorkerSupervisor(
            self._leader, self._state, self._activity, self._notifier,
            critical_threshold=config.workers.critical_failure_threshold,
        )
        self._scheduler = AsyncIOScheduler(timezone=config.timezone)
        self._workers = WorkerScheduler(self._scheduler, self._supervisor)
        w = config.workers
        self._workers.register("job_monitor", monitor.check, w.job_monitor_interval)
        self._workers.register("instance_supervisor", instances.check, w.instance_supervisor_interval)
        self._workers.register("autonomy", loop.run_cycle, w.autonomy_interval)
        self._workers.register("backtest_consumer", consumer.consume_backtests, w.backtest_consumer_interval)
        self._workers.register("improve_consumer", consumer.consume_improvements, w.improve_consumer_interval)
        self._workers.register("evolve_consumer", consumer.consume_evolutions, w.evolve_consumer_interval)
        self._scheduler.start()

        # 6. Leadership: workers only run on the leader
        if isinstance(self._leader, LeaseLeaderElector):
            self._scheduler.add_job(
                self._renew_lease, IntervalTrigger(seconds=config.leader.renew_interval_seconds),
                id="leader_renew", max_instances=1, coalesce=True,
                next_run_time=datetime.now() + timedelta(seconds=config.leader.renew_interval_seconds),
            )
        if await self._leader.try_acquire() and not self._workers.running:
            self._workers.start_workers()

        # 7. API server
        if config.api.enabled:
            app = create_api_app(config, self._storage, self._activity, self.status)
            self._api = ApiServer(app, config.api.host, config.api.port)
            await self._api.start()

        # 8. Telegram
        commands = BotCommands(config, self._storage, self._activity, self._promotion, self.status)
        self._telegram = TelegramBot(config.telegram, commands)
        await self._telegram.start()
        self._notifier.set_app(self._telegram.app)

        self._running = True
        bots = await self._storage.list_bots()
        await self._activity.system(
            f"Fleet engine online ({len(bots)} active bots, "
            f"{'leader' if self._leader.is_leader() else 'standby'})",
            detail={"node_id": config.leader.node_id, "workers": self._workers.names},
        )
        await self._notifier.system_online(len(bots), self._leader.is_leader())
        log.info("engine.started", workers=self._workers.names, leader=self._leader.is_leader())

    def _build_leader(self) -> LeaderElector:
        config = self._config.leader
        if config.mode == "lease":
            return LeaseLeaderElector(
                self._db, config.node_id, ttl_seconds=config.lease_ttl_seconds,
                on_elected=self._on_elected, on_revoked=self._on_revoked,
            )
        return SingleInstanceLeader()

    async def _renew_lease(self) -> None:
        await self._leader.try_acquire()

    async def _on_elected(self) -> None:
        self._workers.start_workers()
        await self._activity.system(
            f"Node {self._config.leader.node_id} elected leader (epoch {self._leader.epoch})",
        )

    def _on_revoked(self) -> None:
        self._workers.stop_workers()
        log.warning("engine.leadership_lost", node_id=self._config.leader.node_id)

    def status(self) -> dict:
        """Point-in-time engine status for the API, metrics and /status."""
        if not self._running or self._state is None:
            return {"node_id": self._config.leader.node_id if self._config else None, "running": False}
        slots = self._governor.slots()
        return {
            "running": True,
            "node_id": self._config.leader.node_id,
            "leader": self._leader.snapshot(),
            "workers_running": self._workers.running,
            "workers": self._supervisor.snapshot(),
            "backend": self._state.backend.snapshot(),
            "slots": {"heavy": slots.heavy, "light": slots.light, "available_mb": slots.available_mb},
            "breakers": {
                "instance": self._state.instance_breakers.snapshot(),
                "pipeline": self._state.pipeline_breakers.snapshot(),
            },
        }

    async def wait(self) -> None:
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Graceful shutdown."""
        if not self._running:
            self._stop_event.set()
            return
        log.info("engine.stopping")
        self._running = False

        # 1. Stop workers, then the scheduler
        if self._workers:
            self._workers.stop_workers()
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        # 2. Release leadership so a standby can take over immediately
        if self._leader:
            await self._leader.release()

        # 3. Stop API server
        if self._api:
            await self._api.stop()

        # 4. Notify, then stop Telegram
        if self._notifier:
            await self._notifier.system_shutdown()
            await self._notifier.drain()
        if self._telegram:
            await self._telegram.stop()

        # 5. Close database
        if self._activity:
            await self._activity.system("Fleet engine shutting down")
        if self._db:
            await self._db.close()

        self._stop_event.set()
        log.info("engine.stopped")


def _lock_file(config: Config) -> Path:
    return Path(config.db_path).resolve().parent / "fleet.pid"


def _acquire_lock(lock_file: Path) -> None:
    """Ensure only one single-mode engine runs per database. Write PID to lockfile."""
    current_pid = os.getpid()
    if lock_file.exists():
        try:
            old_pid = int(lock_file.read_text().strip())
        except (ValueError, OSError):
            log.warning("lockfile.corrupt")
            lock_file.unlink(missing_ok=True)
            old_pid = None

        if old_pid is not None and old_pid != current_pid:
            try:
                os.kill(old_pid, 0)  # signal 0 = just check existence
                raise RuntimeError(f"Another engine is running (PID {old_pid})")
            except (ProcessLookupError, PermissionError):
                # Stale lockfile: previous process died without cleanup
                log.warning("lockfile.stale", old_pid=old_pid)

    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock_file.write_text(str(current_pid))


def _release_lock(lock_file: Path) -> None:
    """Remove PID lockfile on exit."""
    try:
        if lock_file.exists() and lock_file.read_text().strip() == str(os.getpid()):
            lock_file.unlink()
    except OSError:
        pass


async def main() -> None:
    config = load_config()
    # Lease mode coordinates through the database; single mode must be the only process
    lock_file = _lock_file(config) if config.leader.mode == "single" else None
    if lock_file:
        _acquire_lock(lock_file)

    engine = FleetEngine(config)

    # Handle SIGTERM/SIGINT for graceful shutdown
    loop = asyncio.get_running_loop()

    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(engine.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await engine.start()
        await engine.wait()
    finally:
        if engine.running:
            await engine.stop()
        if lock_file:
            _release_lock(lock_file)


def run() -> None:
    """Entry point for pyproject.toml script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
