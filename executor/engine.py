"""
Transaction execution engine. Builds the instruction set for an opportunity,
attaches compute-budget and priority-fee instructions, signs, submits with
bounded retries and waits for confirmation.

The active-submission set caps how many transactions are in flight at once.
A full set is backpressure, not a fault: the caller gets a not-admitted
outcome back.
"""

from __future__ import annotations

import hashlib
import logging
import math
import struct
import threading
import time
from dataclasses import dataclass
from typing import Protocol, Sequence

from client.rpc import RpcError, Submitter, TransientRpcError, retry_async
from scanner.models import (
    ExecutionOutcome,
    ExecutionResult,
    Instruction,
    Opportunity,
    RejectReason,
    StepAction,
    SubmissionStatus,
)
from scanner.protocols import ProtocolRegistry

logger = logging.getLogger(__name__)

COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"
LAMPORTS_PER_SOL = 1_000_000_000
SIGNATURE_FEE_LAMPORTS = 5_000
MICRO_LAMPORTS_PER_LAMPORT = 1_000_000

# ComputeBudget instruction discriminators
_SET_COMPUTE_UNIT_LIMIT = 2
_SET_COMPUTE_UNIT_PRICE = 3


class BuildFailed(Exception):
    """The instruction set for an opportunity could not be built."""
    pass


class TransactionSigner(Protocol):
    @property
    def public_key(self) -> str: ...

    def sign(self, instructions: Sequence[Instruction], blockhash: str) -> bytes:
        """Compile, sign and serialize a transaction for the given blockhash."""
        ...


class ActiveSubmissionSet:
    """
    Ids of in-flight submissions. try_add() is one atomic check-and-reserve,
    so the set never grows past capacity and an id is never in flight twice.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._ids: set[str] = set()
        self._lock = threading.Lock()
        self.peak = 0

    def try_add(self, key: str) -> RejectReason | None:
        """Reserve a slot for key. Returns the rejection reason, or None on success."""
        with self._lock:
            if key in self._ids:
                return RejectReason.DUPLICATE_IN_FLIGHT
            if len(self._ids) >= self.capacity:
                return RejectReason.CONCURRENCY_CAP
            self._ids.add(key)
            self.peak = max(self.peak, len(self._ids))
            return None

    def remove(self, key: str) -> None:
        with self._lock:
            self._ids.discard(key)

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._ids)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


def compute_priority_fee(profit: float, base: int, profit_share: float, cap: int) -> int:
    """
    Priority fee in micro-lamports per compute unit. Non-decreasing in profit
    and never above cap.
    """
    bonus = math.floor(max(profit, 0.0) * 1_000_000 * profit_share)
    return min(base + bonus, cap)


def set_compute_unit_limit(units: int) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        accounts=(),
        data=struct.pack("<BI", _SET_COMPUTE_UNIT_LIMIT, units),
    )


def set_compute_unit_price(micro_lamports: int) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        accounts=(),
        data=struct.pack("<BQ", _SET_COMPUTE_UNIT_PRICE, micro_lamports),
    )


def estimate_fee_sol(priority_fee: int, compute_units: int, n_signatures: int = 1) -> float:
    """Signature fee plus the priority fee for the whole compute budget, in SOL."""
    priority_lamports = priority_fee * compute_units // MICRO_LAMPORTS_PER_LAMPORT
    return (SIGNATURE_FEE_LAMPORTS * n_signatures + priority_lamports) / LAMPORTS_PER_SOL


@dataclass
class ExecutorConfig:
    max_concurrent: int = 3
    max_retries: int = 3
    retry_delay_sec: float = 0.5
    confirm_timeout_sec: float = 30.0
    priority_fee_base: int = 50_000
    priority_fee_profit_share: float = 0.1
    priority_fee_cap: int = 1_000_000
    compute_unit_limit: int = 200_000

    @classmethod
    def from_config(cls, cfg) -> ExecutorConfig:
        return cls(
            max_concurrent=cfg.max_concurrent_trades,
            max_retries=cfg.max_retries,
            retry_delay_sec=cfg.retry_delay_sec,
            confirm_timeout_sec=cfg.confirm_timeout_sec,
            priority_fee_base=cfg.priority_fee_base,
            priority_fee_profit_share=cfg.priority_fee_profit_share,
            priority_fee_cap=cfg.priority_fee_cap,
            compute_unit_limit=cfg.compute_unit_limit,
        )


class Executor:
    def __init__(
        self,
        submitter: Submitter,
        signer: TransactionSigner | None,
        registry: ProtocolRegistry,
        config: ExecutorConfig | None = None,
        paper_trading: bool = False,
    ) -> None:
        if signer is None and not paper_trading:
            raise ValueError("A transaction signer is required for live trading")
        self._submitter = submitter
        self._signer = signer
        self._registry = registry
        self._config = config or ExecutorConfig()
        self._paper = paper_trading
        self._active = ActiveSubmissionSet(self._config.max_concurrent)

    @property
    def active(self) -> ActiveSubmissionSet:
        return self._active

    @property
    def paper_trading(self) -> bool:
        return self._paper

    def priority_fee_for(self, opportunity: Opportunity) -> int:
        c = self._config
        return compute_priority_fee(
            opportunity.estimated_profit, c.priority_fee_base, c.priority_fee_profit_share, c.priority_fee_cap,
        )

    async def execute_opportunity(self, opportunity: Opportunity) -> ExecutionOutcome:
        """
        Submit one opportunity. Returns a not-admitted outcome when the active
        set is full or the id is already in flight. Faults during build, send
        or confirm come back as a failed ExecutionResult, never as exceptions.
        """
        reject = self._active.try_add(opportunity.id)
        if reject is not None:
            logger.debug("Not admitted %s: %s", opportunity.id, reject.value)
            return ExecutionOutcome(opportunity=opportunity, admitted=False, reason=reject)

        try:
            result = await self._submit(opportunity)
        except Exception as e:
            logger.exception("Unexpected error executing %s", opportunity.id)
            result = self._failed(opportunity, SubmissionStatus.SEND_FAILED, str(e))
        finally:
            self._active.remove(opportunity.id)

        return ExecutionOutcome(opportunity=opportunity, admitted=True, result=result)

    def build_instructions(self, opportunity: Opportunity, priority_fee: int) -> list[Instruction]:
        """Compute-budget prefix followed by the protocol instructions of every path step."""
        instructions = [
            set_compute_unit_limit(self._config.compute_unit_limit),
            set_compute_unit_price(priority_fee),
        ]
        if not opportunity.execution_path:
            raise BuildFailed(f"{opportunity.id} has an empty execution path")

        for step in opportunity.execution_path:
            if step.action == StepAction.SWAP:
                dex = self._registry.dex_adapter(step.venue)
                if dex is None:
                    raise BuildFailed(f"No DEX adapter for venue '{step.venue}'")
                instructions.append(dex.build_swap(step))
            elif step.action == StepAction.LIQUIDATE:
                lending = self._registry.lending_adapter(step.venue)
                if lending is None:
                    raise BuildFailed(f"No lending adapter for protocol '{step.venue}'")
                if step.position is None:
                    raise BuildFailed(f"Liquidation step on {step.venue} has no position")
                instructions.extend(lending.build_liquidation(step))
            else:
                raise BuildFailed(f"Unknown step action: {step.action}")
        return instructions

    async def _submit(self, opportunity: Opportunity) -> ExecutionResult:
        start = time.time()
        priority_fee = self.priority_fee_for(opportunity)

        try:
            instructions = self.build_instructions(opportunity, priority_fee)
        except Exception as e:
            logger.error("Build failed for %s: %s", opportunity.id, e)
            return self._failed(opportunity, SubmissionStatus.BUILD_FAILED, str(e), priority_fee=priority_fee)

        if self._paper:
            return self._paper_execute(opportunity, priority_fee, start)

        c = self._config
        try:
            blockhash = await retry_async(
                self._submitter.get_latest_blockhash,
                attempts=c.max_retries, delay_sec=c.retry_delay_sec,
            )
            raw = self._signer.sign(instructions, blockhash)
            signature = await retry_async(
                self._submitter.send_transaction, raw,
                attempts=c.max_retries, delay_sec=c.retry_delay_sec,
            )
        except (TransientRpcError, RpcError) as e:
            logger.warning("Send failed for %s: %s", opportunity.id, e)
            return self._failed(opportunity, SubmissionStatus.SEND_FAILED, str(e), priority_fee=priority_fee)

        trade = {"opportunity_id": opportunity.id, "signature": signature}
        logger.info(
            "Submitted %s sig=%s priority_fee=%d est_profit=%.6f",
            opportunity.id, signature, priority_fee, opportunity.estimated_profit,
            extra=trade,
        )

        confirm_error = None
        try:
            status = await self._submitter.confirm_transaction(signature, c.confirm_timeout_sec)
        except Exception as e:
            # Sent but unresolved: keep the signature so it can still be tracked
            logger.warning("Confirmation of %s for %s failed: %s", signature, opportunity.id, e, extra=trade)
            status = SubmissionStatus.TIMEOUT
            confirm_error = f"confirmation failed: {e}"
        fee_paid = await self._fee_paid(signature, priority_fee)
        elapsed_ms = (time.time() - start) * 1000

        if status == SubmissionStatus.CONFIRMED:
            logger.info(
                "Confirmed %s in %.0fms: profit=%.6f fee=%.6f",
                opportunity.id, elapsed_ms, opportunity.estimated_profit, fee_paid,
                extra=trade,
            )
            return ExecutionResult(
                opportunity=opportunity,
                success=True,
                profit=opportunity.estimated_profit,
                signature=signature,
                fee_paid=fee_paid,
                status=status,
                priority_fee=priority_fee,
            )

        logger.warning(
            "Submission %s for %s ended %s after %.0fms", signature, opportunity.id, status.value, elapsed_ms,
            extra=trade,
        )
        return ExecutionResult(
            opportunity=opportunity,
            success=False,
            profit=0.0,
            signature=signature,
            fee_paid=fee_paid,
            status=status,
            error=confirm_error or f"transaction {status.value}",
            priority_fee=priority_fee,
        )

    async def _fee_paid(self, signature: str, priority_fee: int) -> float:
        """Fee charged on chain, or the fee-schedule estimate if it can't be read."""
        try:
            lamports = await retry_async(
                self._submitter.get_transaction_fee, signature,
                attempts=self._config.max_retries, delay_sec=self._config.retry_delay_sec,
            )
        except (TransientRpcError, RpcError) as e:
            logger.debug("Fee lookup for %s failed: %s", signature, e)
            lamports = None
        if lamports is None:
            return estimate_fee_sol(priority_fee, self._config.compute_unit_limit)
        return lamports / LAMPORTS_PER_SOL

    def _paper_execute(self, opportunity: Opportunity, priority_fee: int, start: float) -> ExecutionResult:
        """Simulate a confirmed submission for paper trading mode."""
        fee = estimate_fee_sol(priority_fee, self._config.compute_unit_limit)
        digest = hashlib.sha256(f"{opportunity.id}:{start}".encode()).hexdigest()[:16]
        logger.info(
            "[PAPER] Executed %s: %d steps, size=%.2f, profit=%.6f fee=%.6f",
            opportunity.type.value, len(opportunity.execution_path),
            opportunity.position_size, opportunity.estimated_profit, fee,
        )
        return ExecutionResult(
            opportunity=opportunity,
            success=True,
            profit=opportunity.estimated_profit,
            signature=f"paper_{digest}",
            fee_paid=fee,
            status=SubmissionStatus.CONFIRMED,
            priority_fee=priority_fee,
        )

    @staticmethod
    def _failed(
        opportunity: Opportunity,
        status: SubmissionStatus,
        error: str,
        priority_fee: int = 0,
    ) -> ExecutionResult:
        return ExecutionResult(
            opportunity=opportunity,
            success=False,
            profit=0.0,
            signature="",
            fee_paid=0.0,
            status=status,
            error=error,
            priority_fee=priority_fee,
        )
