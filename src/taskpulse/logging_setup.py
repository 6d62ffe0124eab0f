# src/taskpulse/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Console threshold per logger prefix; the longest matching prefix wins.
# The log file always receives everything at file_level.
CONSOLE_THRESHOLDS: dict[str, int] = {
    # Tick summaries, dispatch outcomes, promotions: the operator's view.
    "taskpulse.heartbeat": logging.INFO,
    "taskpulse.dispatch": logging.INFO,
    "taskpulse.tasks.graph_evaluator": logging.INFO,
    "taskpulse.tasks.recurring_scheduler": logging.INFO,
    # One line per row write; only problems on the console.
    "taskpulse.tasks.task_store": logging.WARNING,
    # Background sync loop and per-request chatter.
    "taskpulse.connectors.matrix_": logging.WARNING,
    "taskpulse.executor": logging.WARNING,
    "taskpulse": logging.INFO,
    "httpx": logging.WARNING,
    "nio": logging.ERROR,
    "py.warnings": logging.ERROR,
}
DEFAULT_THIRD_PARTY_THRESHOLD = logging.ERROR


def console_threshold(name: str) -> int:
    best = ""
    for prefix in CONSOLE_THRESHOLDS:
        if (name == prefix or name.startswith(prefix)) and len(prefix) > len(best):
            best = prefix
    return CONSOLE_THRESHOLDS[best] if best else DEFAULT_THIRD_PARTY_THRESHOLD


class _ComponentFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= console_threshold(record.name)


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    *,
    log_dir: str | Path = ".local/taskpulse",
    console_level: int | str = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path:
    """
    Console handler filtered per component, plus <log_dir>/taskpulse.log with
    every record at file_level. Call once, before the first log line.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "taskpulse.log"

    root = logging.getLogger()
    root.setLevel(min(file_level, _level(console_level)))
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(_level(console_level))
    console.setFormatter(fmt)
    console.addFilter(_ComponentFilter())
    root.addHandler(console)

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    return log_file
