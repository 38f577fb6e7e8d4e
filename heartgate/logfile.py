"""Logging setup for the gateway and client processes."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

from heartgate.config import normalize_level
from heartgate.errors import FatalError

LOG_FORMAT = "[%(asctime)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "error": logging.ERROR,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def to_logging_level(level: Union[str, int]) -> int:
    return _LEVELS[normalize_level(level)]


def configure_logging(
    path: Union[str, Path, None] = None,
    level: Union[str, int] = "info",
    *,
    logger_name: str = "heartgate",
) -> logging.Handler:
    """Attach a single handler to the ``heartgate`` logger tree.

    Records are appended to ``path`` when given (stderr otherwise), one line per
    event. Stream handlers flush after every record, so the file is always
    tail-friendly. Previously installed handlers are removed and closed, which
    keeps repeated calls (tests, reconfiguration) from duplicating lines.
    """
    target = logging.getLogger(logger_name)
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.close()

    handler: logging.Handler
    if path is None:
        handler = logging.StreamHandler(sys.stderr)
    else:
        log_path = Path(path)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        except OSError as exc:
            raise FatalError(f"cannot open log file {log_path}: {exc}") from exc

    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    target.addHandler(handler)
    target.setLevel(to_logging_level(level))
    target.propagate = False
    return handler


__all__ = ["configure_logging", "to_logging_level", "LOG_FORMAT", "DATE_FORMAT"]
