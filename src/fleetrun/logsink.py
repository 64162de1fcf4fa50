"""Append-only run log."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_path: Path | None, verbose: bool = False) -> logging.Handler | None:
    """Send fleetrun's log records to ``log_path``, one timestamped line each.

    A log file that cannot be opened only produces a warning; the run goes on
    without one.
    """
    root = logging.getLogger("fleetrun")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False

    if log_path is None:
        return None

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    except OSError as e:
        print(f"Warning: cannot open log file {log_path}: {e}", file=sys.stderr)
        return None

    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root.addHandler(handler)
    return handler


def close_logging(handler: logging.Handler | None) -> None:
    if handler is None:
        return
    logging.getLogger("fleetrun").removeHandler(handler)
    handler.close()
