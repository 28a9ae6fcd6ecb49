"""Autonomy cycle — score every active bot, then decide its stage and next work."""

from __future__ import annotations

from collections import Counter

import structlog

from botfleet.autonomy.promotion import PromotionStateMachine
from botfleet.autonomy.scorer import AutonomyScorer
from botfleet.shell.config import AutonomyConfig
from botfleet.shell.contract import BotMetrics, Decision, JobType, Stage
from botfleet.shell.storage import Storage
from botfleet.supervision.resilience import is_transient_error

log = structlog.get_logger()

# Stages whose bots are still being researched and may be evolved
EVOLVABLE_STAGES = (Stage.TRIALS.value, Stage.PAPER.value)


class AutonomyLoop:
    def __init__(
        self,
        storage: Storage,
        scorer: AutonomyScorer,
        promotion: PromotionStateMachine,
        config: AutonomyConfig | None = None,
    ) -> None:
        self._storage = storage
        self._scorer = scorer
        self._promotion = promotion
        self._config = config or AutonomyConfig()
        # Id of the last bot evaluated when the fleet exceeds the per-cycle cap
        self._cursor = ""

    async def run_cycle(self) -> dict[str, int]:
        """One pass over active bots. Returns decision counts."""
        if not self._config.enabled:
            return {}
        counts: Counter[str] = Counter()
        bots = await self._storage.list_bots()
        for bot in self._next_batch(bots):
            try:
                score = await self._scorer.score_bot(bot)
                outcome = await self._promotion.evaluate(bot, score.score)
                counts[outcome.decision.value] += 1
                if outcome.decision == Decision.HOLD and outcome.gates is not None:
                    if await self._queue_evolution(bot):
                        counts["EVOLVE_QUEUED"] += 1
            except Exception as e:
                # Infrastructure failures belong to the worker's backoff
                if is_transient_error(e):
                    raise
                counts["ERROR"] += 1
                log.error("autonomy.bot_failed", bot_id=bot["id"], error=str(e), exc_info=True)

        if counts.get("PROMOTE") or counts.get("DEMOTE") or counts.get("ERROR"):
            log.info("autonomy.cycle", bots=len(bots), **counts)
        return dict(counts)

    def _next_batch(self, bots: list[dict]) -> list[dict]:
        """Rotate through the fleet so a capped cycle still reaches every bot."""
        limit = self._config.max_bots_per_cycle
        if len(bots) <= limit:
            return bots
        start = next((i for i, b in enumerate(bots) if b["id"] > self._cursor), 0)
        batch = (bots[start:] + bots[:start])[:limit]
        self._cursor = batch[-1]["id"]
        return batch

    async def _queue_evolution(self, bot: dict) -> bool:
        """Queue an evolution for a research-stage bot that is failing its gates."""
        if bot["stage"] not in EVOLVABLE_STAGES:
            return False
        if not BotMetrics.from_json(bot["metrics"]).backtest_completed:
            return False
        for job_type in (JobType.EVOLVING.value, JobType.IMPROVING.value, JobType.BACKTESTER.value):
            if await self._storage.has_open_job(bot["id"], job_type):
                return False
        await self._storage.create_job(bot["id"], JobType.EVOLVING.value, {"reason": "gates_failed"})
        log.info("autonomy.evolution_queued", bot_id=bot["id"], stage=bot["stage"])
        return True
