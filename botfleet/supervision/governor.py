"""Concurrency governor — sizes the heavy/light job slots from free memory."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import psutil
import structlog

from botfleet.shell.clock import Clock, utcnow
from botfleet.shell.config import GovernorConfig
from botfleet.shell.contract import JobType

log = structlog.get_logger()

HEAVY_JOB_TYPES = (JobType.MATRIX_RUN.value, JobType.EVOLVING.value)
LIGHT_JOB_TYPES = (
    JobType.BACKTESTER.value,
    JobType.IMPROVING.value,
    JobType.HEALTH_CHECK.value,
    JobType.PROMOTION_CHECK.value,
    JobType.DEMOTION_CHECK.value,
)

MemoryProbe = Callable[[], float]


def available_memory_mb() -> float:
    return psutil.virtual_memory().available / (1024 * 1024)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass(frozen=True)
class Slots:
    heavy: int
    light: int
    available_mb: float


def compute_slots(available_mb: float, config: GovernorConfig) -> Slots:
    usable = available_mb * config.safety_margin
    heavy = _clamp(
        math.floor((usable - config.light_min * config.light_cost_mb) / config.heavy_cost_mb),
        config.heavy_min, config.heavy_max,
    )
    light = _clamp(
        math.floor((usable - heavy * config.heavy_cost_mb) / config.light_cost_mb),
        config.light_min, config.light_max,
    )
    return Slots(heavy=heavy, light=light, available_mb=available_mb)


class ConcurrencyGovernor:
    def __init__(
        self,
        config: GovernorConfig | None = None,
        probe: MemoryProbe = available_memory_mb,
        clock: Clock = utcnow,
    ) -> None:
        self._config = config or GovernorConfig()
        self._probe = probe
        self._clock = clock
        self._cached: Slots | None = None
        self._cached_at: datetime | None = None

    def slots(self) -> Slots:
        now = self._clock()
        if (
            self._cached is not None
            and self._cached_at is not None
            and (now - self._cached_at).total_seconds() < self._config.cache_seconds
        ):
            return self._cached

        slots = compute_slots(self._probe(), self._config)
        if self._cached is None or (slots.heavy, slots.light) != (self._cached.heavy, self._cached.light):
            log.info("governor.slots_changed", heavy=slots.heavy, light=slots.light,
                     available_mb=round(slots.available_mb))
        self._cached = slots
        self._cached_at = now
        return slots

    def limit_for(self, job_type: str) -> int:
        slots = self.slots()
        return slots.heavy if job_type in HEAVY_JOB_TYPES else slots.light
