"""Promotion state machine — moves bots through TRIALS -> PAPER -> SHADOW -> CANARY -> LIVE.

Per bot and cycle, in order:
  1. killed/archived bots are skipped
  2. auto-revert: a sharp Sharpe decline from the recent generation peak
     restores the peak's config as a new generation (stage unchanged)
  3. stage lock or MANUAL mode skips any stage transition
  4. demotion rules for the bot's current stage
  5. promotion gates, with the failsafe: the latest evaluation OR the
     best cross-validated cell passing is enough
  6. CANARY never auto-promotes; passing gates only announces
     READY_FOR_LIVE and ``approve_live`` is the manual step

Stage changes are conditional on the bot still being at the stage we
read and are written together with their audit row.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import timedelta

import structlog

from botfleet.autonomy.gates import STAGE_THRESHOLDS, GateReport, consistency_passed, evaluate_gates
from botfleet.shell.activity import ActivityLogger
from botfleet.shell.clock import Clock, from_db, utcnow
from botfleet.shell.config import PromotionConfig
from botfleet.shell.contract import (
    AUTO_REVERT,
    BotMetrics,
    Decision,
    JobType,
    PromotionMode,
    Stage,
    next_stage,
    previous_stage,
)
from botfleet.shell.storage import Storage
from botfleet.supervision.state import FleetState, HoldRecord

log = structlog.get_logger()


@dataclass(frozen=True)
class DemotionRule:
    min_score: float | None = None
    max_drawdown_pct: float | None = None
    min_win_rate: float | None = None
    min_sharpe: float | None = None
    min_profit_factor: float | None = None
    check_large_loss: bool = False


# Floors are the entry requirements of the stage below, so a bot that just
# cleared them is not bounced straight back.
DEMOTION_RULES: dict[Stage, DemotionRule] = {
    Stage.PAPER: DemotionRule(min_score=40, max_drawdown_pct=20, check_large_loss=True),
    Stage.SHADOW: DemotionRule(min_win_rate=35, max_drawdown_pct=15),
    Stage.CANARY: DemotionRule(min_sharpe=0.5, max_drawdown_pct=12),
    Stage.LIVE: DemotionRule(max_drawdown_pct=20, min_profit_factor=1.0),
}


@dataclass
class PromotionOutcome:
    bot_id: str
    decision: Decision
    from_stage: str
    to_stage: str | None = None
    reason: str = ""
    gates: GateReport | None = None
    metrics_source: str | None = None
    reverted_to_generation: int | None = None
    new_generation: int | None = None
    applied: bool = False


class PromotionStateMachine:
    def __init__(
        self,
        storage: Storage,
        activity: ActivityLogger,
        state: FleetState,
        notifier=None,
        config: PromotionConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._storage = storage
        self._activity = activity
        self._hold_log = state.hold_log
        self._notifier = notifier
        self._config = config or PromotionConfig()
        self._clock = clock

    # --- Entry points ---

    async def evaluate(self, bot: dict, autonomy_score: float | None) -> PromotionOutcome:
        bot_id = bot["id"]
        stage = Stage(bot["stage"])

        if bot["killed_at"] or bot["archived_at"]:
            return PromotionOutcome(bot_id, Decision.SKIP, stage.value, reason="inactive")

        reverted = await self.check_auto_revert(bot)
        if reverted:
            return reverted

        locked_until = from_db(bot["stage_locked_until"])
        if locked_until and locked_until > self._clock():
            return PromotionOutcome(bot_id, Decision.SKIP, stage.value,
                                    reason=f"stage_locked: {bot['stage_lock_reason'] or ''}".strip())
        if bot["promotion_mode"] == PromotionMode.MANUAL.value:
            return PromotionOutcome(bot_id, Decision.SKIP, stage.value, reason="manual_mode")

        metrics = BotMetrics.from_json(bot["metrics"])

        demotion = await self._check_demotion(bot, stage, metrics, autonomy_score)
        if demotion:
            return demotion

        if stage == Stage.LIVE:
            return PromotionOutcome(bot_id, Decision.HOLD, stage.value, reason="live")

        report, source = await self._evaluate_with_failsafe(bot, stage, metrics, autonomy_score)
        if source is None:
            outcome = PromotionOutcome(bot_id, Decision.HOLD, stage.value, reason="gates_failed", gates=report)
            await self._log_hold(bot, outcome)
            return outcome

        if stage == Stage.CANARY:
            return await self._ready_for_live(bot, report, source)

        return await self._transition(
            bot, Decision.PROMOTE, stage, next_stage(stage), report, source, metrics, autonomy_score,
            reason=f"All {report.passed_count} gates passed ({source})",
        )

    async def approve_live(self, bot_id: str, approver: str) -> PromotionOutcome:
        """Operator approval of CANARY -> LIVE. Gates must still pass."""
        bot = await self._storage.get_bot(bot_id)
        if not bot:
            raise ValueError(f"Unknown bot: {bot_id}")
        stage = Stage(bot["stage"])
        if bot["killed_at"] or bot["archived_at"]:
            return PromotionOutcome(bot_id, Decision.SKIP, stage.value, reason="inactive")
        if stage != Stage.CANARY:
            return PromotionOutcome(bot_id, Decision.SKIP, stage.value, reason=f"not_canary ({stage.value})")

        score_row = await self._storage.get_autonomy_score(bot_id)
        score = score_row["score"] if score_row else None
        metrics = BotMetrics.from_json(bot["metrics"])
        report, source = await self._evaluate_with_failsafe(bot, stage, metrics, score)
        if source is None:
            return PromotionOutcome(bot_id, Decision.HOLD, stage.value, reason="gates_failed", gates=report)

        return await self._transition(
            bot, Decision.PROMOTE, stage, Stage.LIVE, report, source, metrics, score,
            reason=f"Approved for LIVE by {approver}", approved_by=approver,
        )

    async def gates_pass(self, bot: dict) -> bool:
        """Whether the bot is promotion-ready right now (latest or best cell)."""
        stage = Stage(bot["stage"])
        if stage not in STAGE_THRESHOLDS:
            return False
        score_row = await self._storage.get_autonomy_score(bot["id"])
        score = score_row["score"] if score_row else None
        _, source = await self._evaluate_with_failsafe(bot, stage, BotMetrics.from_json(bot["metrics"]), score)
        return source is not None

    # --- Gates ---

    async def _evaluate_with_failsafe(
        self, bot: dict, stage: Stage, metrics: BotMetrics, score: float | None,
    ) -> tuple[GateReport, str | None]:
        thresholds = STAGE_THRESHOLDS[stage]
        consistency = None
        if thresholds.require_consistency:
            sessions = await self._storage.recent_sessions(bot["id"], self._config.consistency_sessions)
            consistency = consistency_passed(
                [s["metrics"] for s in sessions], self._config.consistency_sessions, thresholds.min_profit_factor,
            )

        latest = evaluate_gates(stage, metrics, score, consistency)
        if latest.all_passed:
            return latest, "latest"

        cell = self._best_cell(bot)
        if cell is not None:
            best = evaluate_gates(stage, cell, score, consistency)
            if best.all_passed:
                return best, "best_cell"
        return latest, None

    def _best_cell(self, bot: dict) -> BotMetrics | None:
        if not bot["matrix_best_cell"]:
            return None
        max_age = self._config.best_cell_max_age_days
        if max_age:
            updated = from_db(bot["matrix_updated_at"])
            if updated is None or self._clock() - updated > timedelta(days=max_age):
                return None
        return BotMetrics.from_json(bot["matrix_best_cell"])

    # --- Demotion ---

    async def _check_demotion(
        self, bot: dict, stage: Stage, metrics: BotMetrics, score: float | None,
    ) -> PromotionOutcome | None:
        rule = DEMOTION_RULES.get(stage)
        if rule is None or not metrics.backtest_completed or metrics.total_trades == 0:
            return None

        reasons = []
        if rule.min_score is not None and score is not None and score < rule.min_score:
            reasons.append(f"autonomy score {score} < {rule.min_score}")
        if rule.max_drawdown_pct is not None and abs(metrics.max_drawdown_pct) > rule.max_drawdown_pct:
            reasons.append(f"drawdown {abs(metrics.max_drawdown_pct)}% > {rule.max_drawdown_pct}%")
        if rule.min_win_rate is not None and metrics.win_rate < rule.min_win_rate:
            reasons.append(f"win rate {metrics.win_rate}% < {rule.min_win_rate}%")
        if rule.min_sharpe is not None and metrics.sharpe < rule.min_sharpe:
            reasons.append(f"sharpe {metrics.sharpe} < {rule.min_sharpe}")
        if rule.min_profit_factor is not None and metrics.profit_factor < rule.min_profit_factor:
            reasons.append(f"profit factor {metrics.profit_factor} < {rule.min_profit_factor}")
        if rule.check_large_loss and metrics.net_pnl < -self._config.large_loss_usd:
            reasons.append(f"net loss {metrics.net_pnl} beyond -{self._config.large_loss_usd}")
        if not reasons:
            return None

        return await self._transition(
            bot, Decision.DEMOTE, stage, previous_stage(stage), None, "latest", metrics, score,
            reason="; ".join(reasons),
        )

    # --- Transitions ---

    async def _transition(
        self,
        bot: dict,
        decision: Decision,
        from_stage: Stage,
        to_stage: Stage,
        report: GateReport | None,
        source: str,
        metrics: BotMetrics,
        score: float | None,
        reason: str,
        approved_by: str | None = None,
    ) -> PromotionOutcome:
        bot_id = bot["id"]
        trace_id = uuid.uuid4().hex
        score_row = await self._storage.get_autonomy_score(bot_id)
        applied = await self._storage.apply_stage_change(bot_id, from_stage.value, to_stage.value, {
            "decision": decision.value,
            "trace_id": trace_id,
            "gates": report.snapshot() if report else [],
            "gates_passed": report.passed_count if report else None,
            "gates_total": len(report.gates) if report else None,
            "blocker_codes": report.blockers if report else [],
            "metrics": metrics.to_dict(),
            "metrics_source": source,
            "autonomy_score": score,
            "autonomy_tier": score_row["tier"] if score_row else None,
            "reason": reason,
            "human_approval_required": to_stage == Stage.LIVE,
            "human_approved_by": approved_by,
        })
        outcome = PromotionOutcome(
            bot_id, decision, from_stage.value, to_stage.value, reason=reason,
            gates=report, metrics_source=source, applied=applied,
        )
        if not applied:
            log.info("promotion.stale_stage", bot_id=bot_id, expected=from_stage.value)
            return outcome

        self._hold_log.pop(bot_id, None)
        verb = "Promoted" if decision == Decision.PROMOTE else "Demoted"
        log.info(f"promotion.{decision.value.lower()}", bot_id=bot_id, from_stage=from_stage.value,
                 to_stage=to_stage.value, source=source, reason=reason, trace_id=trace_id)
        await self._activity.promotion(
            f"{verb} {bot['name']} {from_stage.value} -> {to_stage.value}: {reason}",
            severity="info" if decision == Decision.PROMOTE else "warning",
            title=f"{decision.value} {bot['name']}", bot_id=bot_id, trace_id=trace_id,
            detail={"metrics_source": source, "score": score},
        )
        if self._notifier:
            if decision == Decision.PROMOTE:
                await self._notifier.bot_promoted(bot["name"], from_stage.value, to_stage.value, reason)
            else:
                await self._notifier.bot_demoted(bot["name"], from_stage.value, to_stage.value, reason)
        return outcome

    async def _ready_for_live(self, bot: dict, report: GateReport, source: str) -> PromotionOutcome:
        outcome = PromotionOutcome(
            bot["id"], Decision.READY_FOR_LIVE, Stage.CANARY.value, Stage.LIVE.value,
            reason="All CANARY gates passed; awaiting manual approval", gates=report, metrics_source=source,
        )
        if self._should_log(bot["id"], frozenset({"awaiting_live_approval"})):
            log.info("promotion.ready_for_live", bot_id=bot["id"], source=source)
            await self._activity.promotion(
                f"{bot['name']} is ready for LIVE (awaiting approval)", bot_id=bot["id"],
                title="Ready for LIVE", detail={"metrics_source": source},
            )
            if self._notifier:
                await self._notifier.ready_for_live(bot["id"], bot["name"])
        return outcome

    # --- HOLD log suppression ---

    def _should_log(self, bot_id: str, failing: frozenset[str]) -> bool:
        now = self._clock()
        record = self._hold_log.get(bot_id)
        suppress = timedelta(minutes=self._config.hold_log_suppress_minutes)
        if record and record.failing_gates == failing and now - record.logged_at < suppress:
            return False
        self._hold_log[bot_id] = HoldRecord(failing_gates=failing, logged_at=now)
        return True

    async def _log_hold(self, bot: dict, outcome: PromotionOutcome) -> bool:
        blockers = outcome.gates.blockers if outcome.gates else []
        if not self._should_log(bot["id"], frozenset(blockers)):
            return False
        log.info("promotion.hold", bot_id=bot["id"], stage=outcome.from_stage, blockers=blockers)
        await self._activity.promotion(
            f"{bot['name']} holds at {outcome.from_stage}: failing {', '.join(blockers) or 'no gates'}",
            bot_id=bot["id"], detail={"blockers": blockers},
        )
        return True

    # --- Auto-revert ---

    async def check_auto_revert(self, bot: dict) -> PromotionOutcome | None:
        """Restore the recent peak generation's config after a sharp Sharpe decline."""
        bot_id = bot["id"]
        generations = await self._storage.get_generations(bot_id, self._config.revert_window_generations)
        current = next((g for g in generations if g["generation_number"] == bot["current_generation"]), None)
        if current is None or current["sharpe"] is None:
            return None

        others = [g for g in generations
                  if g["generation_number"] != current["generation_number"] and g["sharpe"] is not None]
        if not others:
            return None
        peak = max(others, key=lambda g: g["sharpe"])
        if peak["sharpe"] <= 0:
            return None
        decline = (peak["sharpe"] - current["sharpe"]) / peak["sharpe"]
        if decline < self._config.revert_decline_pct:
            return None

        config = json.loads(peak["strategy_config"] or "{}")
        new_generation = await self._storage.create_generation(
            bot_id, config, parent_generation=current["generation_number"], reason_code=AUTO_REVERT,
        )
        if not await self._storage.has_open_job(bot_id, JobType.BACKTESTER.value):
            await self._storage.create_job(bot_id, JobType.BACKTESTER.value,
                                           {"reason": "auto_revert", "generation": new_generation})

        reason = (
            f"Sharpe {current['sharpe']:.2f} is {decline:.0%} below gen {peak['generation_number']} "
            f"peak {peak['sharpe']:.2f}"
        )
        log.warning("promotion.auto_revert", bot_id=bot_id, from_generation=current["generation_number"],
                    to_config_of=peak["generation_number"], new_generation=new_generation, decline=round(decline, 3))
        await self._activity.promotion(
            f"Auto-reverted {bot['name']} to gen {peak['generation_number']} config: {reason}",
            severity="warning", bot_id=bot_id, title="Auto-revert",
            detail={"new_generation": new_generation, "peak_generation": peak["generation_number"]},
        )
        if self._notifier:
            await self._notifier.bot_reverted(bot["name"], peak["generation_number"], reason)
        return PromotionOutcome(
            bot_id, Decision.HOLD, bot["stage"], reason=f"auto_revert: {reason}",
            reverted_to_generation=peak["generation_number"], new_generation=new_generation, applied=True,
        )
