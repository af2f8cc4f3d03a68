"""
Admission checks and the daily loss circuit breaker. Fail-fast on violations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from scanner.models import Opportunity, RejectReason

logger = logging.getLogger(__name__)


class CircuitBreakerTripped(Exception):
    """Raised when a circuit breaker condition is met. Session should halt."""
    pass


class SafetyCheckFailed(Exception):
    """Raised when a pre-trade safety check fails. Trade should be skipped."""
    pass


class AdmissionRejected(SafetyCheckFailed):
    """An opportunity was refused admission. Carries the machine-readable reason."""

    def __init__(self, reason: RejectReason, detail: str = "") -> None:
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail


@dataclass
class CircuitBreaker:
    """
    Trips once the session's accumulated loss reaches the daily ceiling.
    The loss total is owned by DailyStats; the breaker only judges it.
    """
    max_daily_loss: float

    def check(self, loss_total: float) -> None:
        """Raises CircuitBreakerTripped if the loss ceiling is reached."""
        if loss_total >= self.max_daily_loss:
            raise CircuitBreakerTripped(
                f"Daily loss limit reached: {loss_total:.4f} SOL >= {self.max_daily_loss:.4f} SOL"
            )

    def is_tripped(self, loss_total: float) -> bool:
        return loss_total >= self.max_daily_loss


def verify_loss_ceiling(loss_total: float, max_daily_loss: float) -> None:
    if loss_total >= max_daily_loss:
        raise AdmissionRejected(
            RejectReason.LOSS_CEILING,
            f"loss {loss_total:.4f} >= ceiling {max_daily_loss:.4f}",
        )


def verify_min_profit(opportunity: Opportunity, min_profit: float) -> None:
    if opportunity.estimated_profit < min_profit:
        raise AdmissionRejected(
            RejectReason.PROFIT_TOO_LOW,
            f"{opportunity.id} profit {opportunity.estimated_profit:.4f} < {min_profit:.4f}",
        )


def verify_position_size(opportunity: Opportunity, max_position_size: float) -> None:
    if opportunity.position_size > max_position_size:
        raise AdmissionRejected(
            RejectReason.POSITION_TOO_LARGE,
            f"{opportunity.id} size {opportunity.position_size:.2f} > {max_position_size:.2f}",
        )


def verify_daily_tx_limit(submissions: int, max_daily_transactions: int) -> None:
    """
    Reject once the day's submission count reaches the configured maximum.
    """
    if submissions >= max_daily_transactions:
        raise AdmissionRejected(
            RejectReason.DAILY_TX_LIMIT,
            f"{submissions} submissions today >= {max_daily_transactions}",
        )


def check_admission(
    opportunity: Opportunity,
    *,
    loss_total: float,
    submissions: int,
    max_daily_loss: float,
    min_profit: float,
    max_position_size: float,
    max_daily_transactions: int,
) -> None:
    """
    Run the admission checks in order. Raises AdmissionRejected with the first
    failing reason. Concurrency and duplicate checks happen in the executor.
    """
    verify_loss_ceiling(loss_total, max_daily_loss)
    verify_min_profit(opportunity, min_profit)
    verify_position_size(opportunity, max_position_size)
    verify_daily_tx_limit(submissions, max_daily_transactions)
