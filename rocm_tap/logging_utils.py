from __future__ import annotations

import logging
from typing import TextIO

TRACE_LEVEL = 5

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_COLORS = {
    "TRACE": "cyan",
    "DEBUG": "blue",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

logging.addLevelName(TRACE_LEVEL, "TRACE")


def _trace(self: logging.Logger, message: str, *args: object, **kwargs: object) -> None:
    if self.isEnabledFor(TRACE_LEVEL):
        self._log(TRACE_LEVEL, message, args, **kwargs)


def _build_formatter() -> logging.Formatter:
    try:
        from colorlog import ColoredFormatter  # type: ignore
    except ImportError:
        return logging.Formatter(LOG_FORMAT)
    return ColoredFormatter(f"%(log_color)s{LOG_FORMAT}", log_colors=LOG_COLORS)


def configure_logging(level: int, stream: TextIO | None = None) -> None:
    setattr(logging.Logger, "trace", _trace)
    handler = logging.StreamHandler(stream)
    handler.setFormatter(_build_formatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)


def resolve_log_level(verbosity: int, fallback: str) -> int:
    """Map ``-v`` counts and a level name to a logging level.

    ``-vv`` enables TRACE output, which includes every raw ROCm SMI status.
    """
    if verbosity >= 2:
        return TRACE_LEVEL
    if verbosity == 1:
        return logging.DEBUG
    level = logging.getLevelName(fallback.upper())
    return level if isinstance(level, int) else logging.INFO
