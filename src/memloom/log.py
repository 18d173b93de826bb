"""Logging setup for memloom entry points.

Library modules log through ``from loguru import logger`` directly; only
entry points (CLI, scheduled jobs, embedding applications) call
``setup_logging`` once to pick sinks and levels. Records emitted through the
standard ``logging`` module (httpx, for instance) are routed into loguru.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class _InterceptHandler(logging.Handler):
    """Forward stdlib ``logging`` records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str = "INFO",
    *,
    log_file: str | None = None,
    intercept_stdlib: bool = True,
) -> None:
    """Configure loguru sinks for the current process.

    Args:
        level: Minimum level for every sink.
        log_file: Optional rotating file sink in addition to stderr.
        intercept_stdlib: Route stdlib ``logging`` through loguru.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=_FORMAT,
        level=level.upper(),
        colorize=True,
        backtrace=True,
        diagnose=False,
    )
    if log_file:
        logger.add(
            log_file,
            format=_FORMAT,
            level=level.upper(),
            rotation="10 MB",
            retention="7 days",
            compression="gz",
        )
    if intercept_stdlib:
        logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)

    logger.debug("Logging configured: level={}, file={}", level, log_file)
