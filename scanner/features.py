"""
Feature vector contract shared by the classifier, evaluator and scoring model.

The ordering of FEATURE_NAMES is fixed. Every vector handed to the scoring
model must have exactly N_FEATURES finite values; anything else is a bug in
the caller and raises FeatureSchemaError.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from scanner.models import ExecutionResult, OpportunityType, LendingPosition, VenueQuote

logger = logging.getLogger(__name__)

FEATURE_NAMES: tuple[str, ...] = (
    "price_difference",
    "liquidity_depth",
    "historical_success_rate",
    "gas_estimate",
    "execution_time",
    "market_volatility",
    "volume_24h",
    "pool_utilization",
    "path_complexity",
)

N_FEATURES: int = len(FEATURE_NAMES)

DEFAULT_SUCCESS_PRIOR = 0.5


class FeatureSchemaError(ValueError):
    """Raised when a feature vector does not match FEATURE_NAMES."""
    pass


def as_feature_array(features: Sequence[float] | np.ndarray) -> np.ndarray:
    """Validate a single feature vector and return it as a float64 array."""
    arr = np.asarray(features, dtype=np.float64)
    if arr.shape != (N_FEATURES,):
        raise FeatureSchemaError(
            f"Feature vector shape {arr.shape} does not match ({N_FEATURES},)"
        )
    if not np.all(np.isfinite(arr)):
        raise FeatureSchemaError(f"Feature vector has non-finite values: {arr.tolist()}")
    return arr


def as_feature_matrix(rows: Sequence[Sequence[float]]) -> np.ndarray:
    """Validate a batch of feature vectors. Returns shape (n, N_FEATURES)."""
    matrix = np.asarray(rows, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[1] != N_FEATURES:
        raise FeatureSchemaError(
            f"Feature matrix shape {matrix.shape} does not match (n, {N_FEATURES})"
        )
    if not np.all(np.isfinite(matrix)):
        raise FeatureSchemaError("Feature matrix has non-finite values")
    return matrix


def estimate_execution_time(n_steps: int, slot_time_sec: float, buffer_sec: float) -> float:
    """Expected seconds from submission to confirmation for a path of n_steps."""
    return buffer_sec + slot_time_sec * max(n_steps, 1)


def arbitrage_features(
    buy: VenueQuote,
    sell: VenueQuote,
    success_rate: float,
    gas_estimate: float,
    execution_time: float,
    n_steps: int,
) -> tuple[float, ...]:
    """Feature vector for a two-venue price divergence."""
    spread = (sell.price - buy.price) / buy.price
    return (
        spread,
        min(buy.liquidity, sell.liquidity),
        success_rate,
        gas_estimate,
        execution_time,
        max(buy.volatility, sell.volatility),
        min(buy.volume_24h, sell.volume_24h),
        max(buy.utilization, sell.utilization),
        float(n_steps),
    )


def liquidation_features(
    position: LendingPosition,
    success_rate: float,
    gas_estimate: float,
    execution_time: float,
    n_steps: int,
) -> tuple[float, ...]:
    """Feature vector for an under-collateralized position."""
    # Shortfall below the liquidation line plays the role of the price gap.
    shortfall = max(0.0, 1.0 - position.health_factor)
    return (
        shortfall,
        position.collateral_value,
        success_rate,
        gas_estimate,
        execution_time,
        position.volatility,
        position.volume_24h,
        position.utilization,
        float(n_steps),
    )


@dataclass
class SuccessRateTracker:
    """
    Exponential moving average of execution success per (type, venue).
    Unseen keys report the prior.
    """

    decay: float = 0.9
    prior: float = DEFAULT_SUCCESS_PRIOR
    _rates: dict[tuple[str, str], float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def rate(self, opp_type: OpportunityType, venues: Sequence[str]) -> float:
        """Mean rate over the venues involved (prior for unknown venues)."""
        if not venues:
            return self.prior
        with self._lock:
            values = [self._rates.get((opp_type.value, v), self.prior) for v in venues]
        return math.fsum(values) / len(values)

    def record(self, result: ExecutionResult) -> None:
        opp = result.opportunity
        outcome = 1.0 if result.success else 0.0
        with self._lock:
            for venue in opp.venues:
                key = (opp.type.value, venue)
                current = self._rates.get(key, self.prior)
                self._rates[key] = self.decay * current + (1 - self.decay) * outcome
