"""
Unit tests for executor/engine.py -- instruction building, priority fees,
submission retries, confirmation handling and the concurrency cap.
"""

import asyncio
import struct

import pytest

from client.rpc import RpcError, TransientRpcError
from executor.engine import (
    COMPUTE_BUDGET_PROGRAM_ID,
    ActiveSubmissionSet,
    BuildFailed,
    Executor,
    ExecutorConfig,
    compute_priority_fee,
    estimate_fee_sol,
    set_compute_unit_limit,
    set_compute_unit_price,
)
from scanner.features import N_FEATURES
from scanner.models import (
    ExecutionStep,
    Instruction,
    LendingPosition,
    Opportunity,
    OpportunityType,
    RejectReason,
    Side,
    StepAction,
    SubmissionStatus,
)
from scanner.protocols import ProtocolRegistry


# ---------------------------------------------------------------------------
# Fakes and factories
# ---------------------------------------------------------------------------

class FakeDex:
    def __init__(self, venue):
        self.venue = venue

    async def pairs_for(self, interaction):
        return []

    async def quote(self, pair):
        return None

    def build_swap(self, step):
        return Instruction(program_id=f"{self.venue}-pid", accounts=step.accounts, data=step.side.value.encode())


class FakeLending:
    protocol = "solend"

    async def positions_for(self, interaction):
        return []

    def build_liquidation(self, step):
        return [
            Instruction(program_id="solend-pid", accounts=(), data=b"refresh"),
            Instruction(program_id="solend-pid", accounts=step.accounts, data=b"liquidate"),
        ]


class FakeSubmitter:
    def __init__(self, status=SubmissionStatus.CONFIRMED, fee_lamports=5_000):
        self.status = status
        self.fee_lamports = fee_lamports
        self.send_errors = []
        self.confirm_gate = None
        self.confirm_error = None
        self.sent = []
        self.confirm_calls = 0

    async def get_latest_blockhash(self):
        return "blockhash1"

    async def send_transaction(self, raw):
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(raw)
        return f"sig{len(self.sent)}"

    async def confirm_transaction(self, signature, timeout_sec):
        self.confirm_calls += 1
        if self.confirm_gate is not None:
            await self.confirm_gate.wait()
        if self.confirm_error is not None:
            raise self.confirm_error
        return self.status

    async def get_transaction_fee(self, signature):
        return self.fee_lamports


class FakeSigner:
    public_key = "payer1"

    def __init__(self):
        self.signed = []

    def sign(self, instructions, blockhash):
        self.signed.append((list(instructions), blockhash))
        return b"signed-tx"


def _registry():
    return ProtocolRegistry(
        {"orca": "orca-pid", "raydium": "raydium-pid"},
        {"solend": "solend-pid"},
        {"orca": FakeDex("orca"), "raydium": FakeDex("raydium")},
        {"solend": FakeLending()},
    )


def _arb(oid="e1:arbitrage:SOL/USDC", profit=0.2):
    path = (
        ExecutionStep(venue="orca", program_id="orca-pid", action=StepAction.SWAP, pair="SOL/USDC",
                      side=Side.BUY, amount=10.0, limit_price=100.5, accounts=("orca-pool",)),
        ExecutionStep(venue="raydium", program_id="raydium-pid", action=StepAction.SWAP, pair="SOL/USDC",
                      side=Side.SELL, amount=10.0, limit_price=101.5, accounts=("ray-pool",)),
    )
    return Opportunity(
        id=oid,
        type=OpportunityType.ARBITRAGE,
        event_id="e1",
        features=(0.0,) * N_FEATURES,
        estimated_profit=profit,
        position_size=10.0,
        execution_path=path,
        venues=("orca", "raydium"),
    )


def _liquidation(venue="solend"):
    position = LendingPosition(
        protocol="solend", address="pos1", owner="owner1", collateral_mint="SOL", debt_mint="USDC",
        collateral_value=2000.0, debt_value=2400.0, liquidation_threshold=0.8, liquidation_bonus=0.05,
    )
    step = ExecutionStep(
        venue=venue, program_id="solend-pid", action=StepAction.LIQUIDATE, amount=1000.0,
        accounts=("pos1", "owner1"), position=position,
    )
    return Opportunity(
        id="e2:liquidation:pos1",
        type=OpportunityType.LIQUIDATION,
        event_id="e2",
        features=(0.0,) * N_FEATURES,
        estimated_profit=49.998,
        position_size=1000.0,
        execution_path=(step,),
        venues=(venue,),
    )


def _executor(submitter=None, signer=None, paper=False, **config):
    defaults = dict(max_concurrent=3, retry_delay_sec=0.0, confirm_timeout_sec=1.0)
    defaults.update(config)
    return Executor(
        submitter or FakeSubmitter(),
        signer or FakeSigner(),
        _registry(),
        ExecutorConfig(**defaults),
        paper_trading=paper,
    )


# ---------------------------------------------------------------------------
# ActiveSubmissionSet
# ---------------------------------------------------------------------------

class TestActiveSubmissionSet:
    def test_reserve_and_release(self):
        active = ActiveSubmissionSet(2)
        assert active.try_add("a") is None
        assert "a" in active
        active.remove("a")
        assert len(active) == 0

    def test_cap(self):
        active = ActiveSubmissionSet(2)
        assert active.try_add("a") is None
        assert active.try_add("b") is None
        assert active.try_add("c") == RejectReason.CONCURRENCY_CAP
        assert len(active) == 2
        assert active.peak == 2

    def test_duplicate(self):
        active = ActiveSubmissionSet(2)
        active.try_add("a")
        assert active.try_add("a") == RejectReason.DUPLICATE_IN_FLIGHT
        assert active.snapshot() == frozenset({"a"})

    def test_remove_missing_is_harmless(self):
        active = ActiveSubmissionSet(1)
        active.remove("nope")
        assert len(active) == 0

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ActiveSubmissionSet(0)


# ---------------------------------------------------------------------------
# Fees and compute budget
# ---------------------------------------------------------------------------

class TestPriorityFee:
    def test_formula(self):
        # 50_000 + floor(0.2 * 1e6 * 0.1)
        assert compute_priority_fee(0.2, 50_000, 0.1, 1_000_000) == 70_000

    def test_zero_and_negative_profit_pay_base(self):
        assert compute_priority_fee(0.0, 50_000, 0.1, 1_000_000) == 50_000
        assert compute_priority_fee(-3.0, 50_000, 0.1, 1_000_000) == 50_000

    def test_capped(self):
        assert compute_priority_fee(1000.0, 50_000, 0.1, 1_000_000) == 1_000_000

    def test_monotonic_and_bounded(self):
        profits = [0.0, 0.001, 0.05, 0.1, 0.5, 1.0, 5.0, 9.5, 9.6, 50.0, 1e6]
        fees = [compute_priority_fee(p, 50_000, 0.1, 1_000_000) for p in profits]
        assert fees == sorted(fees)
        assert all(f <= 1_000_000 for f in fees)

    def test_fee_estimate(self):
        # 5000 signature + 70_000 * 200_000 / 1e6 priority lamports
        assert estimate_fee_sol(70_000, 200_000) == pytest.approx(19_000 / 1e9)


class TestComputeBudget:
    def test_unit_limit_encoding(self):
        ix = set_compute_unit_limit(200_000)
        assert ix.program_id == COMPUTE_BUDGET_PROGRAM_ID
        assert ix.data == bytes([2]) + struct.pack("<I", 200_000)

    def test_unit_price_encoding(self):
        ix = set_compute_unit_price(70_000)
        assert ix.data == bytes([3]) + struct.pack("<Q", 70_000)
        assert ix.accounts == ()


class TestBuildInstructions:
    def test_arbitrage_one_swap_per_step(self):
        ex = _executor()
        ixs = ex.build_instructions(_arb(), 70_000)
        assert [ix.program_id for ix in ixs] == [
            COMPUTE_BUDGET_PROGRAM_ID, COMPUTE_BUDGET_PROGRAM_ID, "orca-pid", "raydium-pid",
        ]
        assert ixs[2].data == b"BUY"
        assert ixs[3].data == b"SELL"

    def test_liquidation_uses_protocol_instruction_set(self):
        ex = _executor()
        ixs = ex.build_instructions(_liquidation(), 70_000)
        assert [ix.data for ix in ixs[2:]] == [b"refresh", b"liquidate"]

    def test_missing_adapter_raises(self):
        ex = _executor()
        with pytest.raises(BuildFailed, match="mango"):
            ex.build_instructions(_liquidation(venue="mango"), 70_000)

    def test_live_requires_signer(self):
        with pytest.raises(ValueError, match="signer"):
            Executor(FakeSubmitter(), None, _registry(), ExecutorConfig(), paper_trading=False)


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class TestExecuteOpportunity:
    @pytest.mark.asyncio
    async def test_confirmed(self):
        submitter, signer = FakeSubmitter(), FakeSigner()
        ex = _executor(submitter, signer)
        outcome = await ex.execute_opportunity(_arb())
        assert outcome.admitted is True
        result = outcome.result
        assert result.success is True
        assert result.status == SubmissionStatus.CONFIRMED
        assert result.profit == pytest.approx(0.2)
        assert result.signature == "sig1"
        assert result.fee_paid == pytest.approx(5_000 / 1e9)
        assert result.priority_fee == 70_000
        assert signer.signed[0][1] == "blockhash1"
        assert len(ex.active) == 0

    @pytest.mark.asyncio
    async def test_transient_send_retried(self):
        submitter = FakeSubmitter()
        submitter.send_errors = [TransientRpcError("503"), TransientRpcError("503")]
        ex = _executor(submitter)
        outcome = await ex.execute_opportunity(_arb())
        assert outcome.result.success is True
        assert len(submitter.sent) == 1

    @pytest.mark.asyncio
    async def test_send_exhausted_is_failed_result(self):
        submitter = FakeSubmitter()
        submitter.send_errors = [TransientRpcError("503")] * 3
        ex = _executor(submitter)
        outcome = await ex.execute_opportunity(_arb())
        result = outcome.result
        assert result.success is False
        assert result.status == SubmissionStatus.SEND_FAILED
        assert result.signature == ""
        assert result.profit == 0.0
        assert result.fee_paid == 0.0
        assert submitter.confirm_calls == 0
        assert len(ex.active) == 0

    @pytest.mark.asyncio
    async def test_rpc_rejection_not_retried(self):
        submitter = FakeSubmitter()
        submitter.send_errors = [RpcError(-32602, "invalid transaction")]
        ex = _executor(submitter)
        outcome = await ex.execute_opportunity(_arb())
        assert outcome.result.status == SubmissionStatus.SEND_FAILED
        assert submitter.send_errors == []

    @pytest.mark.asyncio
    async def test_timeout_is_failure_with_estimated_fee(self):
        submitter = FakeSubmitter(status=SubmissionStatus.TIMEOUT, fee_lamports=None)
        ex = _executor(submitter)
        outcome = await ex.execute_opportunity(_arb())
        result = outcome.result
        assert result.success is False
        assert result.status == SubmissionStatus.TIMEOUT
        assert result.profit == 0.0
        assert result.fee_paid == pytest.approx(estimate_fee_sol(70_000, 200_000))

    @pytest.mark.asyncio
    async def test_onchain_failure_records_actual_fee(self):
        submitter = FakeSubmitter(status=SubmissionStatus.FAILED, fee_lamports=25_000)
        ex = _executor(submitter)
        result = (await ex.execute_opportunity(_arb())).result
        assert result.success is False
        assert result.status == SubmissionStatus.FAILED
        assert result.fee_paid == pytest.approx(25_000 / 1e9)
        assert result.pnl == pytest.approx(-25_000 / 1e9)

    @pytest.mark.asyncio
    async def test_build_failure_never_sends(self):
        submitter = FakeSubmitter()
        ex = _executor(submitter)
        outcome = await ex.execute_opportunity(_liquidation(venue="mango"))
        assert outcome.admitted is True
        assert outcome.result.status == SubmissionStatus.BUILD_FAILED
        assert submitter.sent == []
        assert len(ex.active) == 0

    @pytest.mark.asyncio
    async def test_confirm_rpc_error_keeps_signature_and_fee(self):
        submitter = FakeSubmitter()
        submitter.confirm_error = RpcError(-32603, "Internal error")
        ex = _executor(submitter)
        result = (await ex.execute_opportunity(_arb())).result
        assert result.success is False
        assert result.status == SubmissionStatus.TIMEOUT
        assert result.signature == "sig1"
        assert result.fee_paid == pytest.approx(5_000 / 1e9)
        assert "Internal error" in result.error
        assert len(submitter.sent) == 1
        assert len(ex.active) == 0

    @pytest.mark.asyncio
    async def test_unexpected_confirm_error_keeps_signature(self):
        submitter = FakeSubmitter()
        submitter.confirm_error = RuntimeError("socket closed")
        ex = _executor(submitter)
        result = (await ex.execute_opportunity(_arb())).result
        assert result.success is False
        assert result.status == SubmissionStatus.TIMEOUT
        assert result.signature == "sig1"
        assert "socket closed" in result.error

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_failed_result(self):
        class BrokenSigner(FakeSigner):
            def sign(self, instructions, blockhash):
                raise RuntimeError("keypair unreadable")

        submitter = FakeSubmitter()
        ex = _executor(submitter, signer=BrokenSigner())
        outcome = await ex.execute_opportunity(_arb())
        assert outcome.result.success is False
        assert outcome.result.status == SubmissionStatus.SEND_FAILED
        assert "keypair unreadable" in outcome.result.error
        assert submitter.sent == []
        assert len(ex.active) == 0

    @pytest.mark.asyncio
    async def test_paper_mode_skips_network(self):
        submitter = FakeSubmitter()
        ex = _executor(submitter, paper=True)
        result = (await ex.execute_opportunity(_arb())).result
        assert result.success is True
        assert result.signature.startswith("paper_")
        assert submitter.sent == []
        assert submitter.confirm_calls == 0

    @pytest.mark.asyncio
    async def test_paper_mode_without_signer(self):
        ex = Executor(FakeSubmitter(), None, _registry(), ExecutorConfig(), paper_trading=True)
        assert (await ex.execute_opportunity(_arb())).result.success is True


class TestConcurrencyCap:
    @pytest.mark.asyncio
    async def test_second_rejected_while_first_in_flight(self):
        submitter = FakeSubmitter()
        submitter.confirm_gate = asyncio.Event()
        ex = _executor(submitter, max_concurrent=1)

        first = asyncio.create_task(ex.execute_opportunity(_arb("a")))
        while submitter.confirm_calls == 0:
            await asyncio.sleep(0)
        second = await ex.execute_opportunity(_arb("b"))
        assert second.admitted is False
        assert second.reason == RejectReason.CONCURRENCY_CAP
        assert second.result is None

        submitter.confirm_gate.set()
        assert (await first).result.success is True
        third = await ex.execute_opportunity(_arb("b"))
        assert third.admitted is True

    @pytest.mark.asyncio
    async def test_duplicate_in_flight(self):
        submitter = FakeSubmitter()
        submitter.confirm_gate = asyncio.Event()
        ex = _executor(submitter, max_concurrent=3)
        first = asyncio.create_task(ex.execute_opportunity(_arb("a")))
        while submitter.confirm_calls == 0:
            await asyncio.sleep(0)
        dup = await ex.execute_opportunity(_arb("a"))
        assert dup.reason == RejectReason.DUPLICATE_IN_FLIGHT
        submitter.confirm_gate.set()
        await first
        assert len(submitter.sent) == 1

    @pytest.mark.asyncio
    async def test_burst_never_exceeds_cap(self):
        submitter = FakeSubmitter()
        submitter.confirm_gate = asyncio.Event()
        ex = _executor(submitter, max_concurrent=2)
        tasks = [asyncio.create_task(ex.execute_opportunity(_arb(f"o{i}"))) for i in range(10)]
        await asyncio.sleep(0.01)
        assert len(ex.active) == 2
        submitter.confirm_gate.set()
        outcomes = await asyncio.gather(*tasks)
        assert sum(o.admitted for o in outcomes) == 2
        assert all(o.reason == RejectReason.CONCURRENCY_CAP for o in outcomes if not o.admitted)
        assert ex.active.peak == 2
        assert len(ex.active) == 0

    @pytest.mark.asyncio
    async def test_cancellation_releases_slot(self):
        submitter = FakeSubmitter()
        submitter.confirm_gate = asyncio.Event()
        ex = _executor(submitter, max_concurrent=1)
        task = asyncio.create_task(ex.execute_opportunity(_arb("a")))
        while submitter.confirm_calls == 0:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(ex.active) == 0
