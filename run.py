#!/usr/bin/env python3
"""
On-chain opportunity pipeline -- entry point.

Wires the pipeline together and runs it until interrupted or halted:
  1. Subscribe to program activity (logsSubscribe)
  2. Classify transactions into arbitrage / liquidation candidates
  3. Score + rank with the learned model
  4. Admit under risk limits, submit with priority fees
  5. Track P&L, feed outcomes back into the model

Usage:
  python run.py                 # paper trading (default)
  python run.py --live          # live submission (requires SIGNER_FACTORY)
  python run.py --json-log out.ndjson --log-level DEBUG

Exit codes: 0 on a clean stop, 1 on a startup error, 2 when the daily loss
ceiling halted the session, 3 when an internal pipeline fault stopped it.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import signal
import sys
from typing import Callable

from client.rpc import SolanaRpc
from client.stream import LogStream
from config import Config, load_config
from executor.engine import Executor, ExecutorConfig
from monitor.logger import setup_logging
from monitor.pnl import DailyStats
from pipeline.orchestrator import Orchestrator, RiskLimits
from scanner.classifier import ClassifierParams, OpportunityClassifier
from scanner.evaluator import OpportunityEvaluator
from scanner.feed import FeedConfig, FeedMonitor
from scanner.features import SuccessRateTracker
from scanner.ml_scorer import ScoringModel, ScoringModelConfig
from scanner.protocols import ProtocolRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_ERROR = 1
EXIT_RISK_HALT = 2
EXIT_PIPELINE_FAULT = 3


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="On-chain arbitrage and liquidation pipeline")
    parser.add_argument("--live", action="store_true", help="Submit real transactions (disables paper mode)")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    parser.add_argument("--log-level", type=str, default=None, help="Console log level (overrides LOG_LEVEL)")
    return parser.parse_args(argv)


def load_factory(spec: str) -> Callable[..., object]:
    """Resolve a 'package.module:callable' reference."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Factory must look like 'package.module:callable', got {spec!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    if not callable(factory):
        raise TypeError(f"{spec} is not callable")
    return factory


def build_orchestrator(cfg: Config, rpc: SolanaRpc, stream: LogStream) -> Orchestrator:
    adapters = load_factory(cfg.adapters_factory)(cfg) if cfg.adapters_factory else {}
    if not adapters:
        logger.warning("No protocol adapters configured (ADAPTERS_FACTORY); nothing will be detected")
    signer = load_factory(cfg.signer_factory)(cfg) if cfg.signer_factory else None

    registry = ProtocolRegistry.from_config(cfg, adapters)
    success_rates = SuccessRateTracker()
    classifier = OpportunityClassifier(registry, ClassifierParams.from_config(cfg), success_rates)
    monitor = FeedMonitor(stream, rpc, classifier, FeedConfig.from_config(cfg))
    model = ScoringModel(ScoringModelConfig.from_config(cfg))
    evaluator = OpportunityEvaluator(model, min_score=cfg.min_profit_threshold)
    executor = Executor(
        rpc, signer, registry, ExecutorConfig.from_config(cfg), paper_trading=cfg.paper_trading,
    )
    return Orchestrator(
        monitor, evaluator, executor, model,
        stats=DailyStats(),
        limits=RiskLimits.from_config(cfg),
        success_rates=success_rates,
    )


async def run(cfg: Config) -> int:
    rpc = SolanaRpc(
        cfg.rpc_endpoint,
        commitment=cfg.commitment,
        timeout=cfg.rpc_timeout_sec,
        poll_interval_sec=cfg.confirm_poll_sec,
        max_batch_size=cfg.rpc_batch_size,
    )
    mentions = cfg.stream_mentions or (*cfg.dex_programs.values(), *cfg.lending_programs.values())
    stream = LogStream(
        cfg.wss_endpoint, mentions=mentions, commitment=cfg.commitment, max_retries=cfg.stream_reconnect_max,
    )
    try:
        orchestrator = build_orchestrator(cfg, rpc, stream)
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        logger.error("Startup failed: %s", e)
        await rpc.close()
        return EXIT_STARTUP_ERROR

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await orchestrator.start()
        stop_wait = asyncio.create_task(shutdown.wait())
        halt_wait = asyncio.create_task(orchestrator.wait_stopped())
        await asyncio.wait({stop_wait, halt_wait}, return_when=asyncio.FIRST_COMPLETED)
        stop_wait.cancel()
        halt_wait.cancel()
        if shutdown.is_set():
            logger.info("Shutdown requested")
    finally:
        await orchestrator.stop()
        await orchestrator.drain(timeout=cfg.confirm_timeout_sec + 5.0)
        await rpc.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    final = orchestrator.get_stats()
    logger.info("Final stats: %s", json.dumps(final.summary()))
    if orchestrator.faulted:
        logger.critical("Session stopped by pipeline fault: %s", final.halted_reason)
        return EXIT_PIPELINE_FAULT
    if final.halted_reason is not None:
        logger.critical("Session halted by risk limit: %s", final.halted_reason)
        return EXIT_RISK_HALT
    return EXIT_OK


def main() -> None:
    args = parse_args()
    cfg = load_config()
    updates: dict[str, object] = {}
    if args.live:
        updates["paper_trading"] = False
    if args.log_level:
        updates["log_level"] = args.log_level
    if updates:
        cfg = cfg.model_copy(update=updates)

    mode = "PAPER" if cfg.paper_trading else "LIVE"
    log_file_path = setup_logging(cfg.log_level, json_log_file=args.json_log, mode=mode)
    logger.info("Mode: %s | rpc=%s | wss=%s", mode, cfg.rpc_endpoint, cfg.wss_endpoint)
    logger.info("  Log file: %s", log_file_path)

    if not cfg.paper_trading and not cfg.signer_factory:
        logger.error("SIGNER_FACTORY is required for live trading. Run without --live for paper mode.")
        sys.exit(EXIT_STARTUP_ERROR)

    sys.exit(asyncio.run(run(cfg)))


if __name__ == "__main__":
    main()
