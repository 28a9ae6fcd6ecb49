"""Process-wide mutable state, held in one object and injected where needed."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime

from botfleet.shell.clock import Clock, utcnow
from botfleet.shell.config import Config
from botfleet.supervision.resilience import (
    BackendAvailability,
    BackoffRegistry,
    CircuitBreakerRegistry,
)


@dataclass
class HoldRecord:
    failing_gates: frozenset[str]
    logged_at: datetime


@dataclass
class FleetState:
    backoff: BackoffRegistry
    instance_breakers: CircuitBreakerRegistry
    pipeline_breakers: CircuitBreakerRegistry
    backend: BackendAvailability
    hold_log: dict[str, HoldRecord] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Config, clock: Clock = utcnow, rng: random.Random | None = None) -> FleetState:
        return cls(
            backoff=BackoffRegistry(
                base_seconds=config.workers.backoff_base_seconds,
                max_seconds=config.workers.backoff_max_seconds,
                jitter=config.workers.backoff_jitter,
                rng=rng,
                clock=clock,
            ),
            instance_breakers=CircuitBreakerRegistry(
                threshold=config.supervisor.breaker_threshold,
                cooldown_seconds=config.supervisor.breaker_cooldown_minutes * 60,
                clock=clock,
            ),
            pipeline_breakers=CircuitBreakerRegistry(threshold=5, cooldown_seconds=30, clock=clock),
            backend=BackendAvailability(config.workers.backend_circuit_cooldown_seconds, clock=clock),
        )
