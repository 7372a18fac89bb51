"""
logging_config.py - Centralized logging configuration.

Every module logs through `get_logger(__name__)` using pipe-delimited
event lines, e.g. ``aggregate_complete | jurisdictions=4 | trips=12``.
The CLI and API call `setup_logging` once at startup.
"""

from __future__ import annotations

import json
import logging
import os
import sys


class JsonLineFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: int | None = None, json_format: bool = False) -> None:
    """Configure root logger with consistent formatting.

    Args:
        level: Logging level. Defaults to DEBUG when the DEBUG env var is
            truthy, otherwise INFO.
        json_format: If True, emit JSON log lines.
    """
    if level is None:
        debug = str(os.getenv("DEBUG", "")).strip().lower() in {"1", "true", "yes"}
        level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if json_format:
        formatter: logging.Formatter = JsonLineFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(name)-14s] %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)
