"""
Integration tests for monitor/logger.py -- session logging with mode and
trade context.
"""

import json
import logging
import os
import sys
import tempfile

from monitor.logger import ConsoleFormatter, JSONFormatter, SessionFilter, _component, setup_logging


def _record(msg="Hello %s", args=("world",), level=logging.INFO, name="scanner.feed", exc_info=None, **extra):
    record = logging.LogRecord(
        name=name, level=level, pathname="feed.py",
        lineno=1, msg=msg, args=args, exc_info=exc_info,
    )
    record.__dict__.update(extra)
    return record


def _reset_root():
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()


class TestSessionFilter:
    def test_stamps_mode(self):
        record = _record()
        assert SessionFilter("live").filter(record) is True
        assert record.mode == "LIVE"


class TestJSONFormatter:
    def test_format_basic_message(self):
        parsed = json.loads(JSONFormatter().format(_record(mode="PAPER")))
        assert parsed["level"] == "INFO"
        assert parsed["msg"] == "Hello world"
        assert parsed["logger"] == "scanner.feed"
        assert parsed["component"] == "feed"
        assert parsed["mode"] == "PAPER"
        assert parsed["ts"].endswith("+00:00")
        assert "opportunity_id" not in parsed

    def test_trade_context_included(self):
        record = _record("Confirmed %s", ("e1:arbitrage:SOL/USDC",), name="executor.engine",
                         opportunity_id="e1:arbitrage:SOL/USDC", signature="5xSig")
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["opportunity_id"] == "e1:arbitrage:SOL/USDC"
        assert parsed["signature"] == "5xSig"

    def test_format_with_exception(self):
        try:
            raise ValueError("rpc down")
        except ValueError:
            record = _record("Failed", (), logging.ERROR, exc_info=sys.exc_info())
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["exception"] == "ValueError: rpc down"


class TestConsoleFormatter:
    def test_format_basic_message(self):
        output = ConsoleFormatter(use_color=False).format(_record(mode="LIVE"))
        assert "INF" in output
        assert "LIVE" in output
        assert "feed" in output
        assert "Hello world" in output
        assert "\033[" not in output

    def test_component_names(self):
        assert _component("scanner.feed") == "feed"
        assert _component("__main__") == "main"
        assert len(_component("pipeline.orchestrator")) == 10


class TestSetupLogging:
    def test_creates_session_and_json_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            json_path = os.path.join(tmp, "out.ndjson")
            log_path = setup_logging("WARNING", json_log_file=json_path, log_dir=tmp, mode="LIVE")
            try:
                logging.getLogger("executor.engine").info(
                    "Submitted %s", "e1:arbitrage:SOL/USDC",
                    extra={"opportunity_id": "e1:arbitrage:SOL/USDC", "signature": "5xSig"},
                )
                for handler in logging.getLogger().handlers:
                    handler.flush()

                assert os.path.basename(log_path).startswith("session_live_")
                with open(log_path) as f:
                    line = f.read()
                assert "[LIVE]" in line
                assert "Submitted e1:arbitrage:SOL/USDC" in line
                with open(json_path) as f:
                    entry = json.loads(f.readline())
                assert entry["mode"] == "LIVE"
                assert entry["signature"] == "5xSig"
                assert logging.getLogger("httpx").level == logging.WARNING
            finally:
                _reset_root()
