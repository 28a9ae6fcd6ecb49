"""Collaborators that do the actual work behind a job.

Backtest simulation and strategy mutation live outside the engine; the
consumer only needs these protocols. The unconfigured defaults fail
every job with a clear message instead of pretending to succeed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from botfleet.jobs.payloads import BacktestPayload, EvolvePayload, ImprovePayload
from botfleet.shell.contract import BotMetrics


@dataclass
class BacktestOutcome:
    success: bool
    metrics: BotMetrics | None = None
    error: str = ""


@dataclass
class EvolutionOutcome:
    success: bool
    strategy_config: dict | None = None
    reason_code: str = ""
    error: str = ""


class BacktestExecutor(Protocol):
    async def execute(self, session_id: int, bot: dict, payload: BacktestPayload) -> BacktestOutcome: ...


class Evolver(Protocol):
    async def evolve(self, bot: dict, payload: EvolvePayload) -> EvolutionOutcome: ...

    async def improve(self, bot: dict, payload: ImprovePayload) -> EvolutionOutcome: ...


class UnconfiguredBacktestExecutor:
    async def execute(self, session_id: int, bot: dict, payload: BacktestPayload) -> BacktestOutcome:
        return BacktestOutcome(success=False, error="No backtest executor configured")


class UnconfiguredEvolver:
    async def evolve(self, bot: dict, payload: EvolvePayload) -> EvolutionOutcome:
        return EvolutionOutcome(success=False, error="No evolver configured")

    async def improve(self, bot: dict, payload: ImprovePayload) -> EvolutionOutcome:
        return EvolutionOutcome(success=False, error="No evolver configured")
