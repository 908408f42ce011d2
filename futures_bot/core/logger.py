"""
Logging setup. File + console; every record carries the signal-cycle id.
"""

from __future__ import annotations
import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Optional

# Id of the signal-check cycle running in the current task ("-" outside a cycle)
current_cycle: ContextVar[str] = ContextVar("current_cycle", default="-")


class CycleFilter(logging.Filter):
    """Inject the current cycle id as `record.cycle`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle = current_cycle.get()
        return True


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the futures_bot logger: console and optional file.
    Never log API keys or secrets.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger("futures_bot")
    root.setLevel(log_level)
    root.handlers.clear()

    fmt = "%(asctime)s | %(levelname)-8s | %(name)s | cycle=%(cycle)s | %(message)s"
    date_fmt = "%Y-%m-%d %H:%M:%S"
    formatter = logging.Formatter(fmt, datefmt=date_fmt)
    cycle_filter = CycleFilter()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    console.addFilter(cycle_filter)
    root.addHandler(console)

    if log_dir and log_file:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_dir / log_file, encoding="utf-8")
        fh.setFormatter(formatter)
        fh.addFilter(cycle_filter)
        root.addHandler(fh)

    return root
