from __future__ import annotations

import logging
import sys
from typing import TextIO

from .config import LoggingSettings

VERBOSE = 5
logging.addLevelName(VERBOSE, "VERBOSE")

LEVELS: dict[str, int] = {
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "verbose": VERBOSE,
}


def level_for(name: str | None) -> int:
    """Map a configured level name to a logging level; empty, unset or unknown means info."""
    if not name or not name.strip():
        return logging.INFO
    level = LEVELS.get(name.strip().lower())
    if level is None:
        logging.getLogger(__name__).warning("Ignoring unknown log level=%s. Using default=info", name)
        return logging.INFO
    return level


def configure_logging(settings: LoggingSettings, *, stream: TextIO | None = None) -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(settings.format))
    root.addHandler(handler)

    level = level_for(settings.level)
    root.setLevel(level)
    logging.getLogger(__name__).info("Initialized logger with log level %s", settings.level)
