"""
Central loguru setup for the KRX valuation collector.

Every module calls ``get_logger(__name__)``. Records carry a ``utility``
extra (krx_valuation, database, scheduler, general) so file output can be
split per concern when ``LOG_TO_FILE`` is set. Library loggers that use the
stdlib (aiohttp, apscheduler, psycopg) are routed through the same sinks.
"""

import atexit
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from loguru import logger as _loguru_logger

# One file per utility per process
RUN_ID = f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{os.getpid()}"

LOGS_BASE_DIR = Path(__file__).resolve().parents[3] / "logs"

LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | {extra[utility]} | "
    "{message} | {name}:{function}:{line}"
)

_UTILITY_KEYWORDS = (
    ("krx_valuation", ("krx", "valuation")),
    ("scheduler", ("scheduler",)),
    ("database", ("database",)),
)

_state: Dict[str, object] = {"console": None, "console_level": None}
_file_sinks: Dict[str, int] = {}


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to loguru, keeping the original caller."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _loguru_logger.bind(utility=record.name.split(".")[0]).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def _detect_utility(name: str) -> str:
    lowered = name.lower()
    for utility, keywords in _UTILITY_KEYWORDS:
        if any(k in lowered for k in keywords):
            return utility
    return "general"


def _file_logging_requested() -> bool:
    return os.getenv("LOG_TO_FILE", "0").strip().lower() in {"1", "true", "yes"}


def _add_console_sink(level: str) -> None:
    _state["console"] = _loguru_logger.add(sys.stdout, level=level, format=LOG_FORMAT, enqueue=True)
    _state["console_level"] = level


def _configure_console() -> None:
    if _state["console"] is not None:
        return
    _loguru_logger.remove()
    _loguru_logger.configure(extra={"utility": "general"})
    _add_console_sink(os.getenv("LOG_LEVEL", "INFO").upper())
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def _add_file_sink(utility: str) -> None:
    if utility in _file_sinks:
        return
    directory = LOGS_BASE_DIR / utility
    directory.mkdir(parents=True, exist_ok=True)
    _file_sinks[utility] = _loguru_logger.add(
        str(directory / f"{utility}_{RUN_ID}.log"),
        level="INFO",
        format=LOG_FORMAT,
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
        enqueue=True,
        filter=lambda record: record["extra"].get("utility") == utility,
    )


def get_logger(name: str, utility: Optional[str] = None):
    """Return a loguru logger bound to ``name`` and its utility."""
    utility = utility or _detect_utility(name)
    _configure_console()
    if _file_logging_requested():
        _add_file_sink(utility)
    return _loguru_logger.bind(name=name, utility=utility)


def set_console_level(level: str) -> None:
    """Swap the console sink for one at `level` (used by the CLI --verbose flag)."""
    _configure_console()
    _loguru_logger.remove(_state["console"])
    _add_console_sink(level.upper())


def shutdown_logging() -> None:
    """Drain queued records and drop every sink. Safe to call repeatedly."""
    sink_ids = list(_file_sinks.values())
    if _state["console"] is not None:
        sink_ids.append(_state["console"])
    for sink_id in sink_ids:
        try:
            _loguru_logger.remove(sink_id)
        except ValueError as e:
            sys.stderr.write(f"Log sink {sink_id} already removed: {e}\n")
    _file_sinks.clear()
    _state["console"] = None
    _state["console_level"] = None


atexit.register(shutdown_logging)
