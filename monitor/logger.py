"""
Session logging.

Every record is stamped with the session mode (PAPER or LIVE). Records about a
particular trade carry its opportunity id and transaction signature when the
caller passes them through ``extra``. Three outputs:
  - stderr: time, level, mode and component columns, LIVE highlighted
  - file (always): DEBUG log at <log_dir>/session_<mode>_YYYYMMDD_HHMMSS.log
  - file (optional): ndjson with the same fields, one object per line
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone


_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_MAGENTA = "\033[35m"
_CYAN = "\033[36m"
_WHITE = "\033[37m"

_LEVEL_STYLES = {
    "DEBUG": (_DIM, "DBG"),
    "INFO": (_CYAN, "INF"),
    "WARNING": (_YELLOW, "WRN"),
    "ERROR": (_RED, "ERR"),
    "CRITICAL": (_RED + _BOLD, "CRT"),
}

# Loggers that chatter at INFO/DEBUG on every request or frame
_NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "asyncio")

# Optional per-record trade context, set via logger.info(..., extra={...})
TRADE_FIELDS = ("opportunity_id", "signature")

_COMPONENT_WIDTH = 10
_MODE_WIDTH = 5


def _component(name: str) -> str:
    """'scanner.feed' -> 'feed', '__main__' -> 'main'."""
    tail = name.rsplit(".", 1)[-1].strip("_") or name
    return tail[:_COMPONENT_WIDTH]


def _exception_text(record: logging.LogRecord) -> str | None:
    if record.exc_info and record.exc_info[1]:
        return f"{type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
    return None


class SessionFilter(logging.Filter):
    """Stamps each record with the session mode."""

    def __init__(self, mode: str) -> None:
        super().__init__()
        self.mode = mode.upper()

    def filter(self, record: logging.LogRecord) -> bool:
        record.mode = self.mode
        return True


class ConsoleFormatter(logging.Formatter):
    def __init__(self, use_color: bool = True):
        super().__init__()
        self._use_color = use_color and _supports_color()

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%H:%M:%S", time.localtime(record.created))
        color, tag = _LEVEL_STYLES.get(record.levelname, (_WHITE, "???"))
        mode = getattr(record, "mode", "").ljust(_MODE_WIDTH)
        component = _component(record.name).ljust(_COMPONENT_WIDTH)
        msg = record.getMessage()
        exc = _exception_text(record)

        if not self._use_color:
            line = f"{ts} {tag} {mode} {component} {msg}"
            return f"{line}\n     {exc}" if exc else line

        mode_color = _RED + _BOLD if mode.strip() == "LIVE" else _DIM
        line = f"{_DIM}{ts}{_RESET} {color}{tag}{_RESET} {mode_color}{mode}{_RESET} {_MAGENTA}{component}{_RESET} {msg}"
        return f"{line}\n{_RED}     {exc}{_RESET}" if exc else line


class JSONFormatter(logging.Formatter):
    """One JSON object per record, trade context included when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "mode": getattr(record, "mode", None),
            "component": _component(record.name),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field in TRADE_FIELDS:
            value = getattr(record, field, None)
            if value:
                entry[field] = value
        exc = _exception_text(record)
        if exc:
            entry["exception"] = exc
        return json.dumps(entry, separators=(",", ":"))


def session_log_path(log_dir: str, mode: str) -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return os.path.join(log_dir, f"session_{mode.lower()}_{timestamp}.log")


def setup_logging(
    level: str = "INFO",
    json_log_file: str | None = None,
    log_dir: str | None = None,
    mode: str = "PAPER",
) -> str:
    """
    Configure the root logger for one session. The console honors `level`;
    the session file always captures DEBUG. Returns the session file path.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    session = SessionFilter(mode)
    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(ConsoleFormatter())
    handlers.append(console)

    if log_dir is None:
        log_dir = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_path = session_log_path(log_dir, session.mode)
    session_file = logging.FileHandler(log_path, mode="a")
    session_file.setLevel(logging.DEBUG)
    session_file.setFormatter(logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)-8s [%(mode)s] %(name)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    handlers.append(session_file)

    if json_log_file:
        ndjson = logging.FileHandler(json_log_file, mode="a")
        ndjson.setFormatter(JSONFormatter())
        handlers.append(ndjson)

    for handler in handlers:
        handler.addFilter(session)
        root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_path


def _supports_color() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
