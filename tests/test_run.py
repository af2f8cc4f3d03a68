"""
Unit tests for run.py helper behavior.
"""

from unittest.mock import AsyncMock, patch

import pytest

import run
from client.rpc import SolanaRpc
from client.stream import LogStream
from config import Config
from pipeline.orchestrator import Orchestrator, OrchestratorState


class TestParseArgs:
    def test_defaults(self):
        args = run.parse_args([])
        assert args.live is False
        assert args.json_log is None
        assert args.log_level is None

    def test_flags(self):
        args = run.parse_args(["--live", "--json-log", "out.ndjson", "--log-level", "DEBUG"])
        assert args.live is True
        assert args.json_log == "out.ndjson"
        assert args.log_level == "DEBUG"


class TestLoadFactory:
    def test_resolves_callable(self):
        assert run.load_factory("run:parse_args") is run.parse_args

    def test_rejects_bad_format(self):
        with pytest.raises(ValueError, match="package.module:callable"):
            run.load_factory("no_colon_here")

    def test_rejects_non_callable(self):
        with pytest.raises(TypeError):
            run.load_factory("run:EXIT_OK")

    def test_missing_module(self):
        with pytest.raises(ImportError):
            run.load_factory("does_not_exist_pkg:factory")


class TestBuildOrchestrator:
    def test_paper_mode_without_signer(self):
        cfg = Config(_env_file=None)
        rpc = SolanaRpc("https://rpc.test")
        orch = run.build_orchestrator(cfg, rpc, LogStream("wss://rpc.test"))
        assert isinstance(orch, Orchestrator)
        assert orch.is_running is False

    def test_live_mode_requires_signer(self):
        cfg = Config(_env_file=None, paper_trading=False)
        with pytest.raises(ValueError, match="signer"):
            run.build_orchestrator(cfg, SolanaRpc("https://rpc.test"), LogStream("wss://rpc.test"))


class TestRun:
    @pytest.mark.asyncio
    async def test_startup_error_exit_code(self):
        cfg = Config(_env_file=None, adapters_factory="does_not_exist_pkg:factory")
        assert await run.run(cfg) == run.EXIT_STARTUP_ERROR

    @pytest.mark.asyncio
    async def test_risk_halt_exit_code(self):
        cfg = Config(_env_file=None)

        async def halt_immediately(self):
            self._state = OrchestratorState.RUNNING
            await self.stop(reason="Daily loss limit reached")

        with patch.object(Orchestrator, "start", halt_immediately), \
                patch.object(SolanaRpc, "close", AsyncMock()):
            assert await run.run(cfg) == run.EXIT_RISK_HALT

    @pytest.mark.asyncio
    async def test_pipeline_fault_exit_code(self):
        cfg = Config(_env_file=None)

        async def fault_immediately(self):
            self._state = OrchestratorState.RUNNING
            await self.stop(reason="pipeline fault: feature vector has 3 values", fault=True)

        with patch.object(Orchestrator, "start", fault_immediately), \
                patch.object(SolanaRpc, "close", AsyncMock()):
            assert await run.run(cfg) == run.EXIT_PIPELINE_FAULT
