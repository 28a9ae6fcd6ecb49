"""Resilience primitives — backoff, circuit breakers, backend availability.

All state is in memory and owned by one ``FleetState`` per engine; a
restarted process starts with clean registries, which is acceptable
because every decision they gate is re-derived from the database.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from botfleet.shell.clock import Clock, utcnow

log = structlog.get_logger()

# Error text that marks an infrastructure problem rather than a bug
TRANSIENT_PATTERNS = (
    "connection refused",
    "connection reset",
    "connection terminated",
    "too many connections",
    "timeout",
    "timed out",
    "deadlock",
    "database is locked",
    "unable to open database",
    "disk i/o error",
    "econnreset",
    "etimedout",
    "econnrefused",
    "statement_timeout",
)


def is_transient_error(error: BaseException | str) -> bool:
    """True for connectivity/timeout failures that should open the backend circuit."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    text = str(error).lower()
    return any(p in text for p in TRANSIENT_PATTERNS)


# --- Backoff ---

@dataclass
class BackoffState:
    failures: int = 0
    next_retry_at: datetime | None = None
    last_error: str = ""


class BackoffRegistry:
    """Per-worker exponential backoff with jitter."""

    def __init__(
        self,
        base_seconds: float = 5.0,
        max_seconds: float = 600.0,
        jitter: float = 0.3,
        rng: random.Random | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._base = base_seconds
        self._max = max_seconds
        self._jitter = jitter
        self._rng = rng or random.Random()
        self._clock = clock
        self._states: dict[str, BackoffState] = {}

    def get(self, name: str) -> BackoffState:
        return self._states.setdefault(name, BackoffState())

    def compute_delay(self, failures: int) -> float:
        delay = min(self._base * 2 ** failures, self._max)
        return delay + delay * self._jitter * self._rng.random()

    def should_skip(self, name: str) -> bool:
        state = self._states.get(name)
        return bool(state and state.next_retry_at and state.next_retry_at > self._clock())

    def record_success(self, name: str) -> None:
        self._states.pop(name, None)

    def record_failure(self, name: str, error: BaseException | str = "") -> BackoffState:
        state = self.get(name)
        state.failures += 1
        state.last_error = str(error)
        state.next_retry_at = self._clock() + timedelta(seconds=self.compute_delay(state.failures))
        return state

    def snapshot(self) -> dict[str, dict]:
        return {
            name: {
                "failures": s.failures,
                "next_retry_at": s.next_retry_at.isoformat() if s.next_retry_at else None,
                "last_error": s.last_error,
            }
            for name, s in self._states.items()
        }


# --- Circuit breakers ---

def breaker_key(bot_id: str) -> str:
    """Key of the per-bot instance breaker."""
    return f"bot:{bot_id}"


@dataclass
class BreakerState:
    failures: int = 0
    last_failure_at: datetime | None = None
    is_open: bool = False
    opened_at: datetime | None = None
    awaiting_confirmation_since: datetime | None = None


class CircuitBreakerRegistry:
    """Failure-counting breakers keyed by entity.

    A breaker opens at ``threshold`` consecutive failures. With a cooldown
    it lets one trial through once the cooldown has passed (half-open);
    another failure re-opens it. Successful work does not close a breaker
    directly: callers either ``reset`` it or, for restarts, wait for
    ``confirm`` to see a heartbeat newer than the restart.
    """

    def __init__(self, threshold: int = 3, cooldown_seconds: float | None = None, clock: Clock = utcnow) -> None:
        self._threshold = threshold
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._states: dict[str, BreakerState] = {}

    @property
    def threshold(self) -> int:
        return self._threshold

    def get(self, key: str) -> BreakerState:
        return self._states.setdefault(key, BreakerState())

    def is_open(self, key: str) -> bool:
        state = self._states.get(key)
        if not state or not state.is_open:
            return False
        if self._cooldown is not None and state.opened_at:
            if (self._clock() - state.opened_at).total_seconds() >= self._cooldown:
                return False
        return True

    def record_failure(self, key: str) -> BreakerState:
        state = self.get(key)
        now = self._clock()
        state.failures += 1
        state.last_failure_at = now
        state.awaiting_confirmation_since = None
        if state.failures >= self._threshold:
            if not state.is_open:
                log.warning("breaker.opened", key=key, failures=state.failures)
            state.is_open = True
            state.opened_at = now
        return state

    def await_confirmation(self, key: str, since: datetime | None = None) -> None:
        self.get(key).awaiting_confirmation_since = since or self._clock()

    def is_awaiting_confirmation(self, key: str) -> bool:
        state = self._states.get(key)
        return bool(state and state.awaiting_confirmation_since)

    def confirm(self, key: str, heartbeat_at: datetime | None) -> bool:
        """Close the breaker if ``heartbeat_at`` is newer than the pending restart."""
        state = self._states.get(key)
        if not state or not state.awaiting_confirmation_since or not heartbeat_at:
            return False
        if heartbeat_at <= state.awaiting_confirmation_since:
            return False
        self.reset(key)
        log.info("breaker.confirmed", key=key)
        return True

    def reset(self, key: str) -> None:
        self._states.pop(key, None)

    def snapshot(self) -> dict[str, dict]:
        return {
            key: {
                "failures": s.failures,
                "is_open": self.is_open(key),
                "opened_at": s.opened_at.isoformat() if s.opened_at else None,
                "awaiting_confirmation": s.awaiting_confirmation_since is not None,
            }
            for key, s in self._states.items()
        }


class BackendAvailability:
    """Global circuit tripped by connectivity failures; closes after a cooldown."""

    def __init__(self, cooldown_seconds: float = 30.0, clock: Clock = utcnow) -> None:
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._opened_at: datetime | None = None
        self._reason = ""

    def is_circuit_open(self) -> bool:
        if self._opened_at is None:
            return False
        if (self._clock() - self._opened_at).total_seconds() >= self._cooldown:
            self._opened_at = None
            log.info("backend.circuit_closed")
            return False
        return True

    def open_circuit(self, reason: str = "") -> None:
        if self._opened_at is None:
            log.warning("backend.circuit_opened", reason=reason)
        self._opened_at = self._clock()
        self._reason = reason

    def close(self) -> None:
        self._opened_at = None

    def snapshot(self) -> dict:
        return {"open": self.is_circuit_open(), "reason": self._reason if self._opened_at else ""}
