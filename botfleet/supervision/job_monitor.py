"""Job health monitor — times out RUNNING jobs whose heartbeat went quiet."""

from __future__ import annotations

from datetime import timedelta

import structlog

from botfleet.shell.activity import ActivityLogger
from botfleet.shell.clock import Clock, from_db, utcnow
from botfleet.shell.config import TimeoutConfig
from botfleet.shell.contract import HEARTBEAT_TIMEOUT, JobStatus, JobType
from botfleet.shell.storage import Storage

log = structlog.get_logger()


def timeout_table(config: TimeoutConfig) -> dict[str, int]:
    """Job type -> timeout in minutes."""
    return {
        JobType.HEALTH_CHECK.value: config.health_check,
        JobType.PROMOTION_CHECK.value: config.promotion_check,
        JobType.DEMOTION_CHECK.value: config.demotion_check,
        JobType.BACKTESTER.value: config.backtester,
        JobType.IMPROVING.value: config.improving,
        JobType.EVOLVING.value: config.evolving,
        JobType.MATRIX_RUN.value: config.matrix_run,
    }


class JobHealthMonitor:
    def __init__(
        self,
        storage: Storage,
        activity: ActivityLogger,
        config: TimeoutConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._storage = storage
        self._activity = activity
        self._config = config or TimeoutConfig()
        self._timeouts = timeout_table(self._config)
        self._clock = clock

    def timeout_for(self, job_type: str) -> timedelta:
        return timedelta(minutes=self._timeouts.get(job_type, self._config.default))

    async def check(self) -> int:
        """One monitor tick. Returns how many jobs were moved to TIMEOUT."""
        now = self._clock()
        timed_out = 0
        for job in await self._storage.get_jobs(status=JobStatus.RUNNING.value):
            last_seen = from_db(job["last_heartbeat_at"]) or from_db(job["started_at"])
            if last_seen is None:
                continue
            age = now - last_seen
            limit = self.timeout_for(job["job_type"])
            if age <= limit:
                continue

            reason = (
                f"No heartbeat for {int(age.total_seconds() // 60)}m "
                f"(limit {int(limit.total_seconds() // 60)}m for {job['job_type']})"
            )
            moved = await self._storage.transition_job(
                job["id"], JobStatus.RUNNING, JobStatus.TIMEOUT, HEARTBEAT_TIMEOUT, reason,
                metadata={"age_seconds": int(age.total_seconds()), "job_type": job["job_type"]},
            )
            if not moved:
                continue
            timed_out += 1
            log.warning("job.timeout", job_id=job["id"], job_type=job["job_type"], bot_id=job["bot_id"],
                        age_minutes=round(age.total_seconds() / 60, 1))
            await self._activity.job(
                f"Job {job['id']} ({job['job_type']}) timed out: {reason}",
                severity="warning", title="Job timeout",
                detail={"job_id": job["id"], "reason_code": HEARTBEAT_TIMEOUT},
                bot_id=job["bot_id"],
            )

        if timed_out:
            log.info("job_monitor.tick", timed_out=timed_out)
        return timed_out
