"""
Daily P&L and risk statistics. Process-lifetime only; reset by the
orchestrator once per reset period.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace

from scanner.models import ExecutionResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatsSnapshot:
    trades: int
    profit: float
    losses: int
    loss_total: float
    fees_paid: float
    submissions: int
    window_start: float
    runtime_sec: float
    running: bool = False
    halted_reason: str | None = None

    @property
    def attempts(self) -> int:
        return self.trades + self.losses

    @property
    def success_rate(self) -> float:
        if self.attempts == 0:
            return 0.0
        return self.trades / self.attempts

    @property
    def net_pnl(self) -> float:
        return self.profit - self.loss_total

    def summary(self) -> dict:
        return {
            "trades": self.trades,
            "profit": round(self.profit, 6),
            "losses": self.losses,
            "loss_total": round(self.loss_total, 6),
            "fees_paid": round(self.fees_paid, 6),
            "net_pnl": round(self.net_pnl, 6),
            "submissions": self.submissions,
            "success_rate_pct": round(self.success_rate * 100.0, 1),
            "runtime_sec": round(self.runtime_sec, 0),
            "running": self.running,
            "halted_reason": self.halted_reason,
        }


@dataclass
class DailyStats:
    """
    Aggregate trade outcomes for the current window. A confirmed result adds
    its profit; a failed one counts as a loss and adds the fee it burned to
    loss_total, which is what the loss ceiling is measured against.
    """

    trades: int = 0
    profit: float = 0.0
    losses: int = 0
    loss_total: float = 0.0
    fees_paid: float = 0.0
    submissions: int = 0
    window_start: float = field(default_factory=time.time)

    _session_start: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, result: ExecutionResult) -> None:
        with self._lock:
            self.fees_paid += result.fee_paid
            if result.success:
                self.trades += 1
                self.profit += result.profit
            else:
                self.losses += 1
                self.loss_total += result.fee_paid
            trades, profit, loss_total = self.trades, self.profit, self.loss_total

        logger.info(
            "PnL update: %s %s pnl=%.6f SOL total_profit=%.6f loss_total=%.6f trades=%d",
            result.opportunity.type.value,
            "confirmed" if result.success else result.status.value,
            result.pnl, profit, loss_total, trades,
        )

    def record_submission(self) -> int:
        """Count one admitted submission. Returns the new daily count."""
        with self._lock:
            self.submissions += 1
            return self.submissions

    def reset(self) -> StatsSnapshot:
        """Start a new window. Returns the closed window's snapshot."""
        with self._lock:
            closed = self._snapshot_locked()
            self.trades = 0
            self.profit = 0.0
            self.losses = 0
            self.loss_total = 0.0
            self.fees_paid = 0.0
            self.submissions = 0
            self.window_start = time.time()
        logger.info("Daily stats reset. Closed window: %s", closed.summary())
        return closed

    def snapshot(self, running: bool = False, halted_reason: str | None = None) -> StatsSnapshot:
        with self._lock:
            snap = self._snapshot_locked()
        return replace(snap, running=running, halted_reason=halted_reason)

    def _snapshot_locked(self) -> StatsSnapshot:
        return StatsSnapshot(
            trades=self.trades,
            profit=self.profit,
            losses=self.losses,
            loss_total=self.loss_total,
            fees_paid=self.fees_paid,
            submissions=self.submissions,
            window_start=self.window_start,
            runtime_sec=time.time() - self._session_start,
        )

    @property
    def current_loss(self) -> float:
        with self._lock:
            return self.loss_total

    @property
    def current_submissions(self) -> int:
        with self._lock:
            return self.submissions
