"""
Data models for the opportunity pipeline. Pure data, no behavior.
"""

from __future__ import annotations

import time
from enum import Enum
from dataclasses import dataclass, field


class OpportunityType(Enum):
    ARBITRAGE = "arbitrage"
    LIQUIDATION = "liquidation"


class ProtocolFamily(Enum):
    DEX = "dex"
    LENDING = "lending"


class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"


class StepAction(Enum):
    SWAP = "swap"
    LIQUIDATE = "liquidate"


class SubmissionStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"          # landed with an on-chain error
    TIMEOUT = "timeout"        # not confirmed before the deadline
    SEND_FAILED = "send_failed"
    BUILD_FAILED = "build_failed"


class RejectReason(Enum):
    PROFIT_TOO_LOW = "profit_too_low"
    POSITION_TOO_LARGE = "position_too_large"
    LOSS_CEILING = "loss_ceiling_reached"
    DAILY_TX_LIMIT = "daily_tx_limit_reached"
    CONCURRENCY_CAP = "concurrency_cap_reached"
    DUPLICATE_IN_FLIGHT = "duplicate_in_flight"
    NOT_RUNNING = "not_running"


# ---------------------------------------------------------------------------
# Inbound activity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActivityEvent:
    """One notification from the activity stream."""
    signature: str
    slot: int = 0
    logs: tuple[str, ...] = ()
    err: object = None
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ProgramInteraction:
    program_id: str
    accounts: tuple[str, ...]
    data: str = ""  # base58 instruction data as returned by the RPC
    inner: bool = False


@dataclass(frozen=True)
class TransactionDetail:
    signature: str
    slot: int
    interactions: tuple[ProgramInteraction, ...]
    fee: int = 0  # lamports
    err: object = None
    block_time: int | None = None
    log_messages: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Protocol state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VenueQuote:
    """Price of one asset pair on one venue. Liquidity is quoted in SOL."""
    venue: str
    pair: str
    price: float
    liquidity: float
    pool_address: str = ""
    volume_24h: float = 0.0
    utilization: float = 0.0
    volatility: float = 0.0


@dataclass(frozen=True)
class LendingPosition:
    protocol: str
    address: str
    owner: str
    collateral_mint: str
    debt_mint: str
    collateral_value: float  # SOL
    debt_value: float        # SOL
    liquidation_threshold: float
    liquidation_bonus: float
    close_factor: float = 0.5
    volatility: float = 0.0
    utilization: float = 0.0
    volume_24h: float = 0.0

    @property
    def health_factor(self) -> float:
        if self.debt_value <= 0:
            return float("inf")
        return self.collateral_value * self.liquidation_threshold / self.debt_value

    @property
    def is_liquidatable(self) -> bool:
        return self.debt_value > 0 and self.health_factor < 1.0


# ---------------------------------------------------------------------------
# Opportunities and execution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionStep:
    venue: str
    program_id: str
    action: StepAction
    pair: str = ""
    side: Side | None = None
    amount: float = 0.0
    limit_price: float = 0.0
    accounts: tuple[str, ...] = ()
    position: LendingPosition | None = None


@dataclass(frozen=True)
class Opportunity:
    id: str
    type: OpportunityType
    event_id: str
    features: tuple[float, ...]
    estimated_profit: float  # SOL
    position_size: float     # SOL
    execution_path: tuple[ExecutionStep, ...]
    venues: tuple[str, ...] = ()
    score: float | None = None
    detected_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Instruction:
    program_id: str
    accounts: tuple[str, ...]
    data: bytes


@dataclass(frozen=True)
class ExecutionResult:
    opportunity: Opportunity
    success: bool
    profit: float
    signature: str
    fee_paid: float  # SOL
    status: SubmissionStatus
    error: str = ""
    priority_fee: int = 0  # micro-lamports per compute unit
    timestamp: float = field(default_factory=time.time)

    @property
    def pnl(self) -> float:
        return self.profit - self.fee_paid


@dataclass(frozen=True)
class ExecutionOutcome:
    """What the executor did with one opportunity."""
    opportunity: Opportunity
    admitted: bool
    reason: RejectReason | None = None
    result: ExecutionResult | None = None
