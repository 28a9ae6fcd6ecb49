"""Autonomy scorer — a 0-100 readiness score built from five capped dimensions.

Each dimension is a ladder of simple thresholds capped at 20 points:

  data_reliability   how much evidence exists (completed backtests, trades, data proof)
  decision_quality   profit factor, win rate, Sharpe
  risk_discipline    drawdown inside a believable band, realistic losing trades
  execution_health   job success rate, timeouts, heartbeat freshness
  supervisor_trust   starts full and loses points for restarts, open breakers, kills
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from botfleet.shell.clock import Clock, from_db, utcnow
from botfleet.shell.contract import RUNNER, BotMetrics, InstanceStatus, Tier
from botfleet.shell.storage import Storage
from botfleet.supervision.resilience import CircuitBreakerRegistry, breaker_key

log = structlog.get_logger()

DIMENSION_CAP = 20.0

TIER_CUTOFFS = [
    (85, Tier.FULL_AUTONOMY),
    (70, Tier.SEMI_AUTONOMOUS),
    (50, Tier.SUPERVISED),
]


def tier_for(score: float) -> Tier:
    for cutoff, tier in TIER_CUTOFFS:
        if score >= cutoff:
            return tier
    return Tier.LOCKED


def _ladder(value: float, steps: list[tuple[float, float]]) -> float:
    """Points for the first step whose threshold ``value`` reaches."""
    for threshold, points in steps:
        if value >= threshold:
            return points
    return 0.0


def _cap(value: float) -> float:
    return max(0.0, min(DIMENSION_CAP, value))


@dataclass
class ScoreInputs:
    metrics: BotMetrics
    completed_sessions: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_timed_out: int = 0
    heartbeat_fresh: bool | None = None   # None when the bot has no running instance
    restarts: int = 0
    breaker_open: bool = False
    kills: int = 0


@dataclass
class AutonomyScore:
    score: float
    tier: Tier
    dimensions: dict[str, float]
    breakdown: dict[str, dict] = field(default_factory=dict)


def score_data_reliability(inputs: ScoreInputs) -> tuple[float, dict]:
    m = inputs.metrics
    sessions = _ladder(inputs.completed_sessions, [(20, 12), (10, 9), (5, 6), (1, 3)])
    trades = _ladder(m.total_trades, [(100, 3), (50, 2), (1, 1)])
    proof = 5.0 if m.has_market_data_proof else 0.0
    return _cap(sessions + trades + proof), {"sessions": sessions, "trades": trades, "market_data_proof": proof}


def score_decision_quality(inputs: ScoreInputs) -> tuple[float, dict]:
    m = inputs.metrics
    pf = _ladder(m.profit_factor, [(1.5, 8), (1.2, 5), (1.0, 2)])
    win_rate = _ladder(m.win_rate, [(45, 6), (35, 4), (25, 2)])
    sharpe = _ladder(m.sharpe, [(1.0, 6), (0.5, 4), (0.01, 2)])
    return _cap(pf + win_rate + sharpe), {"profit_factor": pf, "win_rate": win_rate, "sharpe": sharpe}


def score_risk_discipline(inputs: ScoreInputs) -> tuple[float, dict]:
    m = inputs.metrics
    dd = abs(m.max_drawdown_pct)
    if m.total_trades == 0:
        drawdown = 0.0
    elif dd < 0.5:
        # Near-zero drawdown over real trades usually means a broken simulation
        drawdown = 2.0
    else:
        drawdown = _ladder(-dd, [(-10, 12), (-20, 8), (-30, 4)])
    losers = 5.0 if m.losers > 0 else 0.0
    expectancy = 3.0 if m.expectancy > 0 else 0.0
    return _cap(drawdown + losers + expectancy), {"drawdown": drawdown, "losers": losers, "expectancy": expectancy}


def score_execution_health(inputs: ScoreInputs) -> tuple[float, dict]:
    total = inputs.jobs_completed + inputs.jobs_failed + inputs.jobs_timed_out
    if total == 0:
        success = 10.0
    else:
        success = _ladder(inputs.jobs_completed / total, [(0.95, 14), (0.8, 10), (0.6, 6), (0.0, 2)])
    timeouts = 3.0 if inputs.jobs_timed_out == 0 else 0.0
    heartbeat = 0.0 if inputs.heartbeat_fresh is False else 3.0
    return _cap(success + timeouts + heartbeat), {"success_rate": success, "timeouts": timeouts, "heartbeat": heartbeat}


def score_supervisor_trust(inputs: ScoreInputs) -> tuple[float, dict]:
    restarts = -4.0 * inputs.restarts
    breaker = -10.0 if inputs.breaker_open else 0.0
    kills = -20.0 if inputs.kills else 0.0
    return _cap(DIMENSION_CAP + restarts + breaker + kills), {"restarts": restarts, "breaker": breaker, "kills": kills}


DIMENSIONS = {
    "data_reliability": score_data_reliability,
    "decision_quality": score_decision_quality,
    "risk_discipline": score_risk_discipline,
    "execution_health": score_execution_health,
    "supervisor_trust": score_supervisor_trust,
}


def compute_score(inputs: ScoreInputs) -> AutonomyScore:
    dimensions: dict[str, float] = {}
    breakdown: dict[str, dict] = {}
    for name, fn in DIMENSIONS.items():
        dimensions[name], breakdown[name] = fn(inputs)
    score = round(sum(dimensions.values()), 1)
    return AutonomyScore(score=score, tier=tier_for(score), dimensions=dimensions, breakdown=breakdown)


class AutonomyScorer:
    def __init__(
        self,
        storage: Storage,
        breakers: CircuitBreakerRegistry,
        runner_stale_minutes: int = 3,
        clock: Clock = utcnow,
    ) -> None:
        self._storage = storage
        self._breakers = breakers
        self._runner_stale = timedelta(minutes=runner_stale_minutes)
        self._clock = clock

    async def gather(self, bot: dict) -> ScoreInputs:
        bot_id = bot["id"]
        sessions = await self._storage.session_counts(bot_id)
        jobs = await self._storage.job_stats(bot_id)

        heartbeat_fresh = None
        running = await self._storage.get_instances(bot_id, status=InstanceStatus.RUNNING.value)
        runners = [i for i in running if i["job_type"] == RUNNER]
        if runners:
            hb = from_db(runners[0]["last_heartbeat_at"])
            heartbeat_fresh = hb is not None and self._clock() - hb <= self._runner_stale

        return ScoreInputs(
            metrics=BotMetrics.from_json(bot["metrics"]),
            completed_sessions=sessions.get("COMPLETED", 0),
            jobs_completed=jobs.get("COMPLETED", 0),
            jobs_failed=jobs.get("FAILED", 0),
            jobs_timed_out=jobs.get("TIMEOUT", 0),
            heartbeat_fresh=heartbeat_fresh,
            restarts=await self._storage.count_supervisor_restarts(bot_id),
            breaker_open=self._breakers.is_open(breaker_key(bot_id)),
            kills=await self._storage.count_kill_events(bot_id),
        )

    async def score_bot(self, bot: dict) -> AutonomyScore:
        """Compute and persist the bot's score."""
        result = compute_score(await self.gather(bot))
        await self._storage.upsert_autonomy_score(
            bot["id"], result.score, result.tier.value, result.dimensions, result.breakdown,
        )
        log.debug("autonomy.scored", bot_id=bot["id"], score=result.score, tier=result.tier.value)
        return result
