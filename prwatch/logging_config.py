"""prwatch logging configuration.

prwatch logs through structlog. Output goes to stderr unless
`PRWATCH_LOG_FILE` names a file, in which case uncolored lines are appended to
it. The level comes from `PRWATCH_LOG_LEVEL` (default: INFO).
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import structlog

from prwatch.constants import DEFAULT_LOG_LEVEL


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level: Optional[str] = None) -> None:
    """Configure prwatch logging.

    Args:
        level: Optional override for `PRWATCH_LOG_LEVEL`.
    """
    if level:
        os.environ["PRWATCH_LOG_LEVEL"] = level

    numeric_level = _resolve_level(os.getenv("PRWATCH_LOG_LEVEL", DEFAULT_LOG_LEVEL))
    log_file = os.getenv("PRWATCH_LOG_FILE")

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger_factory = structlog.WriteLoggerFactory(file=path.open("a", encoding="utf-8"))
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        logger_factory = structlog.PrintLoggerFactory(file=sys.stderr)
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )
