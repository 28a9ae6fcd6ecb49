"""Fleet contract — the shared vocabulary of stages, statuses and metrics.

Every component reads and writes these values; the database stores the
enum ``.value`` strings.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from enum import Enum


# --- Enums ---

class Stage(Enum):
    TRIALS = "TRIALS"
    PAPER = "PAPER"
    SHADOW = "SHADOW"
    CANARY = "CANARY"
    LIVE = "LIVE"


STAGE_ORDER = [Stage.TRIALS, Stage.PAPER, Stage.SHADOW, Stage.CANARY, Stage.LIVE]

# Stages whose bots run a trading process that the supervisor keeps alive
EXECUTABLE_STAGES = (Stage.PAPER, Stage.SHADOW, Stage.CANARY, Stage.LIVE)


def next_stage(stage: Stage) -> Stage | None:
    idx = STAGE_ORDER.index(stage)
    return STAGE_ORDER[idx + 1] if idx + 1 < len(STAGE_ORDER) else None


def previous_stage(stage: Stage) -> Stage | None:
    idx = STAGE_ORDER.index(stage)
    return STAGE_ORDER[idx - 1] if idx > 0 else None


class JobType(Enum):
    BACKTESTER = "BACKTESTER"
    IMPROVING = "IMPROVING"
    EVOLVING = "EVOLVING"
    MATRIX_RUN = "MATRIX_RUN"
    HEALTH_CHECK = "HEALTH_CHECK"
    PROMOTION_CHECK = "PROMOTION_CHECK"
    DEMOTION_CHECK = "DEMOTION_CHECK"


# Instance job_type for the long-lived trading process of a bot
RUNNER = "RUNNER"

# Backtest session kinds; matrix cells are exploratory and never feed gates or scores
BASELINE_SESSION = "BASELINE"
MATRIX_CELL_SESSION = "MATRIX_CELL"


class JobStatus(Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT, JobStatus.CANCELLED)


class InstanceStatus(Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    RESTARTING = "RESTARTING"


class Tier(Enum):
    LOCKED = "LOCKED"
    SUPERVISED = "SUPERVISED"
    SEMI_AUTONOMOUS = "SEMI_AUTONOMOUS"
    FULL_AUTONOMY = "FULL_AUTONOMY"


class Decision(Enum):
    PROMOTE = "PROMOTE"
    DEMOTE = "DEMOTE"
    HOLD = "HOLD"
    SKIP = "SKIP"
    READY_FOR_LIVE = "READY_FOR_LIVE"


class PromotionMode(Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


# --- Reason codes (job_run_events, kill_events, generations) ---

HEARTBEAT_TIMEOUT = "HEARTBEAT_TIMEOUT"
TERMINATED_BY_SUPERVISOR = "TERMINATED_BY_SUPERVISOR"
STUCK_JOB = "STUCK_JOB"
LIVE_INSTANCE_UNRECOVERABLE = "LIVE_INSTANCE_UNRECOVERABLE"
LIVE_STUCK_JOB = "LIVE_STUCK_JOB"
AUTO_REVERT = "AUTO_REVERT"
EVOLUTION = "EVOLUTION"
IMPROVEMENT = "IMPROVEMENT"


# --- Metrics ---

@dataclass
class BotMetrics:
    """Performance snapshot of a bot's latest completed evaluation.

    Percentages are expressed 0-100. ``max_drawdown_pct`` is the magnitude
    of the worst drawdown, so 0 means "no drawdown observed".
    """
    total_trades: int = 0
    winners: int = 0
    losers: int = 0
    net_pnl: float = 0.0
    win_rate: float = 0.0
    max_drawdown_pct: float = 0.0
    profit_factor: float = 0.0
    expectancy: float = 0.0
    sharpe: float = 0.0
    backtest_completed: bool = False
    has_market_data_proof: bool = False
    walk_forward_passed: bool = False
    walk_forward_consistency: float = 0.0
    overfit_ratio: float | None = None
    stress_test_passed: bool = False
    trading_days: int = 0

    @classmethod
    def from_dict(cls, data: dict | None) -> BotMetrics:
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    @classmethod
    def from_json(cls, raw: str | None) -> BotMetrics:
        if not raw:
            return cls()
        try:
            return cls.from_dict(json.loads(raw))
        except (TypeError, ValueError):
            return cls()

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
