"""Loguru configuration for dashboard and headless runs."""

from __future__ import annotations

import logging
import sys
import warnings
from pathlib import Path

from loguru import logger

from .models import EventLevel
from .state import DashboardState

LOG_FILE = "dashboard.log"
LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"
PACKAGE = __name__.rpartition(".")[0]


def configure_logging(log_dir: Path, *, dashboard: bool = True, level: str = "DEBUG") -> Path:
    """Send logs to a rotating file under ``log_dir``.

    With the dashboard on, the terminal belongs to the UI, so the stderr sink
    is removed and noisy stdlib loggers are quietened.
    """
    logger.remove()
    if not dashboard:
        logger.add(sys.stderr, level="INFO")
    else:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.captureWarnings(False)
        warnings.filterwarnings("ignore", category=FutureWarning)

    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / LOG_FILE
    logger.add(
        path,
        level=level,
        format=LOG_FORMAT,
        rotation="10 MB",
        retention=5,
        backtrace=True,
        diagnose=False,
    )
    logger.info(f"Logging to {path}")
    return path


def attach_event_sink(state: DashboardState, level: str = "WARNING") -> int:
    """Mirror warnings from other libraries into the dashboard event log.

    Records from this package are skipped; they reach the event log directly.
    Returns the loguru handler id so the sink can be removed on shutdown.
    """

    def sink(message) -> None:
        record = message.record
        event_level = EventLevel.WARNING if record["level"].no < logging.ERROR else EventLevel.ERROR
        state.add_event(event_level, f"{record['name']}: {record['message']}")

    def outside_package(record) -> bool:
        return not (record["name"] or "").startswith(PACKAGE)

    return logger.add(sink, level=level, filter=outside_package, format="{message}")
