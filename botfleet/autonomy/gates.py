"""Graduation gates — the pass/fail checks a bot must clear to leave a stage.

Thresholds are per stage and tighten as a bot approaches LIVE. A stage's
result is the conjunction of every gate that applies to it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from botfleet.shell.contract import BotMetrics, Stage


@dataclass(frozen=True)
class GateThresholds:
    min_trades: int
    min_win_rate: float         # percent
    max_drawdown_pct: float     # percent
    min_profit_factor: float
    min_expectancy: float       # dollars per trade
    min_sharpe: float
    min_autonomy_score: float
    require_has_losers: bool = True
    require_market_data_proof: bool = True
    require_profitable: bool = True
    require_consistency: bool = False
    min_days: int | None = None
    require_walk_forward: bool = False
    min_walk_forward_consistency: float | None = None
    max_overfit_ratio: float | None = None
    require_stress_test: bool = False
    requires_approval: bool = False


STAGE_THRESHOLDS: dict[Stage, GateThresholds] = {
    Stage.TRIALS: GateThresholds(
        min_trades=50, min_win_rate=35, max_drawdown_pct=20, min_profit_factor=1.2,
        min_expectancy=10, min_sharpe=0.5, min_autonomy_score=40, require_consistency=True,
    ),
    Stage.PAPER: GateThresholds(
        min_trades=100, min_win_rate=40, max_drawdown_pct=15, min_profit_factor=1.3,
        min_expectancy=15, min_sharpe=0.7, min_autonomy_score=50, min_days=5,
    ),
    Stage.SHADOW: GateThresholds(
        min_trades=200, min_win_rate=45, max_drawdown_pct=12, min_profit_factor=1.4,
        min_expectancy=20, min_sharpe=0.9, min_autonomy_score=60, min_days=10,
        require_walk_forward=True, min_walk_forward_consistency=0.5, max_overfit_ratio=2.5,
    ),
    Stage.CANARY: GateThresholds(
        min_trades=300, min_win_rate=48, max_drawdown_pct=10, min_profit_factor=1.5,
        min_expectancy=25, min_sharpe=1.0, min_autonomy_score=70, min_days=14,
        require_walk_forward=True, min_walk_forward_consistency=0.6, max_overfit_ratio=2.0,
        require_stress_test=True, requires_approval=True,
    ),
}


@dataclass(frozen=True)
class Gate:
    gate_id: str
    required: object
    current: object
    passed: bool


@dataclass
class GateReport:
    stage: str
    gates: list[Gate] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return bool(self.gates) and all(g.passed for g in self.gates)

    @property
    def passed_count(self) -> int:
        return sum(1 for g in self.gates if g.passed)

    @property
    def blockers(self) -> list[str]:
        return [g.gate_id for g in self.gates if not g.passed]

    def snapshot(self) -> list[dict]:
        return [asdict(g) for g in self.gates]


def consistency_passed(sessions: list[BotMetrics], required: int, min_profit_factor: float) -> bool:
    """Each of the last ``required`` completed sessions is profitable at the PF floor."""
    if len(sessions) < required:
        return False
    return all(m.net_pnl > 0 and m.profit_factor >= min_profit_factor for m in sessions[:required])


def evaluate_gates(
    stage: Stage,
    metrics: BotMetrics,
    autonomy_score: float | None = None,
    consistency: bool | None = None,
    thresholds: GateThresholds | None = None,
) -> GateReport:
    """Evaluate every gate that applies to leaving ``stage``.

    ``consistency`` is the precomputed rolling-consistency result; it is only
    consulted for stages that require it.
    """
    t = thresholds or STAGE_THRESHOLDS.get(stage)
    report = GateReport(stage=stage.value)
    if t is None:
        return report

    dd = abs(metrics.max_drawdown_pct)
    gates = [
        Gate("min_trades", t.min_trades, metrics.total_trades, metrics.total_trades >= t.min_trades),
        Gate("backtest_completed", True, metrics.backtest_completed, metrics.backtest_completed),
        Gate("win_rate", t.min_win_rate, metrics.win_rate, metrics.win_rate >= t.min_win_rate),
        # Zero drawdown over a real sample is a simulation artifact, not a pass
        Gate("max_drawdown", t.max_drawdown_pct, dd,
             metrics.total_trades > 0 and 0 < dd <= t.max_drawdown_pct),
        Gate("profit_factor", t.min_profit_factor, metrics.profit_factor,
             metrics.profit_factor >= t.min_profit_factor),
        Gate("expectancy", t.min_expectancy, metrics.expectancy, metrics.expectancy >= t.min_expectancy),
        Gate("sharpe", t.min_sharpe, metrics.sharpe, metrics.sharpe >= t.min_sharpe),
        Gate("score_threshold", t.min_autonomy_score, autonomy_score,
             autonomy_score is not None and autonomy_score >= t.min_autonomy_score),
    ]
    if t.require_profitable:
        gates.append(Gate("profitable", True, metrics.net_pnl, metrics.net_pnl > 0))
    if t.require_has_losers:
        gates.append(Gate("has_losers", True, metrics.losers, metrics.losers > 0))
    if t.require_market_data_proof:
        gates.append(Gate("market_data_proof", True, metrics.has_market_data_proof, metrics.has_market_data_proof))
    if t.require_consistency:
        gates.append(Gate("consistency", True, consistency, consistency is True))
    if t.min_days is not None:
        gates.append(Gate("min_days", t.min_days, metrics.trading_days, metrics.trading_days >= t.min_days))
    if t.require_walk_forward:
        gates.append(Gate("walk_forward_validation", True, metrics.walk_forward_passed, metrics.walk_forward_passed))
    if t.min_walk_forward_consistency is not None:
        gates.append(Gate("walk_forward_consistency", t.min_walk_forward_consistency,
                          metrics.walk_forward_consistency,
                          metrics.walk_forward_consistency >= t.min_walk_forward_consistency))
    if t.max_overfit_ratio is not None:
        ratio = metrics.overfit_ratio
        gates.append(Gate("overfit_ratio", t.max_overfit_ratio, ratio,
                          ratio is not None and ratio <= t.max_overfit_ratio))
    if t.require_stress_test:
        gates.append(Gate("stress_test_passed", True, metrics.stress_test_passed, metrics.stress_test_passed))

    report.gates = gates
    return report
