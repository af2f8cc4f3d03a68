"""
Orchestrator and risk controller. Wires the feed monitor's candidate batches
through ranking and admission into the executor, feeds outcomes back into the
statistics and the scoring model, and halts the session when the daily loss
ceiling is reached.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from executor.engine import Executor
from executor.safety import AdmissionRejected, CircuitBreaker, CircuitBreakerTripped, check_admission
from monitor.pnl import DailyStats, StatsSnapshot
from pipeline.tasks import PeriodicTask
from scanner.evaluator import OpportunityEvaluator
from scanner.feed import FeedMonitor
from scanner.features import SuccessRateTracker
from scanner.ml_scorer import ScoringModel
from scanner.models import ExecutionOutcome, ExecutionResult, Opportunity, RejectReason

logger = logging.getLogger(__name__)


class OrchestratorState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class RiskLimits:
    min_profit: float = 0.05
    max_position_size: float = 1000.0
    max_daily_loss: float = 10.0
    max_daily_transactions: int = 1000
    risk_check_interval_sec: float = 1.0
    stats_reset_period_sec: float = 86_400.0
    performance_log_interval_sec: float = 60.0
    success_rate_alert: float = 0.8

    @classmethod
    def from_config(cls, cfg) -> RiskLimits:
        return cls(
            min_profit=cfg.min_profit_threshold,
            max_position_size=cfg.max_position_size,
            max_daily_loss=cfg.max_daily_loss,
            max_daily_transactions=cfg.max_daily_transactions,
            risk_check_interval_sec=cfg.risk_check_interval_sec,
            stats_reset_period_sec=cfg.stats_reset_period_sec,
            performance_log_interval_sec=cfg.performance_log_interval_sec,
            success_rate_alert=cfg.success_rate_alert,
        )


class Orchestrator:
    def __init__(
        self,
        monitor: FeedMonitor,
        evaluator: OpportunityEvaluator,
        executor: Executor,
        model: ScoringModel,
        stats: DailyStats | None = None,
        limits: RiskLimits | None = None,
        success_rates: SuccessRateTracker | None = None,
    ) -> None:
        self._monitor = monitor
        self._evaluator = evaluator
        self._executor = executor
        self._model = model
        self._stats = stats or DailyStats()
        self._limits = limits or RiskLimits()
        self._success = success_rates or SuccessRateTracker()
        self._breaker = CircuitBreaker(self._limits.max_daily_loss)

        self._state = OrchestratorState.STOPPED
        self._halted_reason: str | None = None
        self._faulted = False
        self._stopped = asyncio.Event()
        self._pump: asyncio.Task | None = None
        self._fault_stop: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

        self._risk_loop = PeriodicTask("risk-check", self._limits.risk_check_interval_sec, self.check_risk)
        self._reset_loop = PeriodicTask("daily-reset", self._limits.stats_reset_period_sec, self._daily_reset)
        self._perf_loop = PeriodicTask(
            "performance", self._limits.performance_log_interval_sec, self._log_performance,
        )

        self.rejections: Counter[RejectReason] = Counter()
        self.dispatched = 0

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is OrchestratorState.RUNNING

    @property
    def halted_reason(self) -> str | None:
        return self._halted_reason

    @property
    def faulted(self) -> bool:
        """True when the session was halted by an internal fault, not a risk limit."""
        return self._faulted

    @property
    def stats(self) -> DailyStats:
        return self._stats

    # -- Lifecycle --

    async def start(self) -> None:
        if self.is_running:
            return
        self._state = OrchestratorState.RUNNING
        self._halted_reason = None
        self._faulted = False
        self._stopped.clear()

        await self._monitor.start()
        self._pump = asyncio.create_task(self._pump_batches(), name="admission-pump")
        self._pump.add_done_callback(self._on_pump_done)
        self._risk_loop.start()
        self._reset_loop.start()
        self._perf_loop.start()
        logger.info(
            "Orchestrator started (max_daily_loss=%.4f SOL, min_profit=%.4f, max_position=%.2f, %s)",
            self._limits.max_daily_loss, self._limits.min_profit, self._limits.max_position_size,
            "PAPER" if self._executor.paper_trading else "LIVE",
        )

    async def stop(self, reason: str | None = None, fault: bool = False) -> None:
        """
        Stop monitoring and admissions. In-flight submissions keep running and
        still report their outcomes; use drain() to wait for them.
        """
        if not self.is_running:
            return
        self._state = OrchestratorState.STOPPED
        if reason is not None:
            self._halted_reason = reason
            self._faulted = fault
            logger.critical("Session halted: %s", reason)

        await self._monitor.stop()
        pump = self._pump
        self._pump = None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
        for loop in (self._risk_loop, self._reset_loop, self._perf_loop):
            await loop.stop()

        self._stopped.set()
        logger.info("Orchestrator stopped (%d in flight): %s", len(self._inflight), self.get_stats().summary())

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight submissions to resolve."""
        pending = list(self._inflight)
        if not pending:
            return
        logger.info("Draining %d in-flight submission(s)", len(pending))
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning("%d submission(s) still in flight after drain timeout", len(not_done))

    def get_stats(self) -> StatsSnapshot:
        return self._stats.snapshot(running=self.is_running, halted_reason=self._halted_reason)

    # -- Admission --

    async def _pump_batches(self) -> None:
        while self.is_running:
            batch = await self._monitor.batches.get()
            await self.process_batch(batch)

    def _on_pump_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        exc = task.exception()
        logger.critical("Admission pump failed: %s: %s", type(exc).__name__, exc, exc_info=exc)
        self._fault_stop = asyncio.ensure_future(self.stop(reason=f"pipeline fault: {exc}", fault=True))

    async def process_batch(self, candidates: Sequence[Opportunity]) -> list[Opportunity]:
        """
        Rank one candidate batch and dispatch every admitted opportunity to the
        executor as its own task. Returns the dispatched opportunities.
        """
        if not self.is_running or not candidates:
            return []
        ranked = await self._evaluator.evaluate_and_rank(candidates)
        dispatched: list[Opportunity] = []
        for opp in ranked:
            if self.admit(opp) is not None:
                continue
            self._dispatch(opp)
            dispatched.append(opp)
        logger.debug(
            "Batch: %d candidates, %d ranked, %d dispatched",
            len(candidates), len(ranked), len(dispatched),
        )
        return dispatched

    def admit(self, opportunity: Opportunity) -> RejectReason | None:
        """Apply the admission policy. Returns the rejection reason, or None if admitted."""
        if not self.is_running:
            return RejectReason.NOT_RUNNING
        try:
            check_admission(
                opportunity,
                loss_total=self._stats.current_loss,
                submissions=self._stats.current_submissions,
                max_daily_loss=self._limits.max_daily_loss,
                min_profit=self._limits.min_profit,
                max_position_size=self._limits.max_position_size,
                max_daily_transactions=self._limits.max_daily_transactions,
            )
        except AdmissionRejected as e:
            self.rejections[e.reason] += 1
            logger.info("Rejected %s: %s", opportunity.id, e, extra={"opportunity_id": opportunity.id})
            return e.reason
        return None

    def _dispatch(self, opportunity: Opportunity) -> None:
        self.dispatched += 1
        task = asyncio.create_task(self._run_one(opportunity), name=f"exec:{opportunity.id}")
        self._inflight.add(task)
        task.add_done_callback(self._on_execution_done)

    def _on_execution_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.error("Outcome handling failed: %s: %s", type(exc).__name__, exc, exc_info=exc)

    async def _run_one(self, opportunity: Opportunity) -> ExecutionOutcome:
        outcome = await self._executor.execute_opportunity(opportunity)
        if not outcome.admitted:
            self.rejections[outcome.reason] += 1
            logger.info("Executor declined %s: %s", opportunity.id, outcome.reason.value)
            return outcome
        self._stats.record_submission()
        await self.handle_result(outcome.result)
        return outcome

    async def handle_result(self, result: ExecutionResult) -> None:
        """Record an execution outcome. Outcomes arriving after stop are still recorded."""
        self._stats.record(result)
        self._success.record(result)
        await self._model.record_outcome(result)

    # -- Periodic loops --

    async def check_risk(self) -> None:
        try:
            self._breaker.check(self._stats.current_loss)
        except CircuitBreakerTripped as e:
            logger.critical("CIRCUIT BREAKER TRIPPED: %s", e)
            await self.stop(reason=str(e))

    async def _daily_reset(self) -> None:
        self._stats.reset()
        self.rejections.clear()

    async def _log_performance(self) -> None:
        snap = self.get_stats()
        logger.info(
            "Performance: %s | model=%s | active=%d rejections=%s",
            snap.summary(), self._model.stats, len(self._executor.active),
            {r.value: n for r, n in self.rejections.items()},
        )
        if snap.attempts > 0 and snap.success_rate < self._limits.success_rate_alert:
            logger.warning(
                "Success rate %.1f%% below alert threshold %.1f%%",
                snap.success_rate * 100.0, self._limits.success_rate_alert * 100.0,
            )
