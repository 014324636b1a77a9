"""
NoteGraph Logging Configuration
===============================
Centralized logging configuration using loguru.

Provides:
  - configure_logging(): Setup function called at application startup
  - JSON log lines when NOTEGRAPH_LOG_FORMAT=json is set

Usage:
    from notegraph.core.logging_config import configure_logging

    configure_logging(level="INFO", json_format=False)

Modules simply do ``from loguru import logger``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional, TextIO, Union

from loguru import logger

_CONFIGURED = False

HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    *,
    sink: Optional[Union[str, TextIO]] = None,
) -> None:
    """
    Configure loguru logging for NoteGraph.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Falls back to NOTEGRAPH_LOG_LEVEL, then INFO.
        json_format: If True, emit one JSON object per line. If None, check
            the NOTEGRAPH_LOG_FORMAT env var.
        sink: Optional file path or stream. Defaults to stderr.
    """
    global _CONFIGURED

    if json_format is None:
        json_format = os.environ.get("NOTEGRAPH_LOG_FORMAT", "").lower() == "json"

    if level is None:
        level = os.environ.get("NOTEGRAPH_LOG_LEVEL", "INFO")

    logger.remove()

    log_sink = sink if sink is not None else sys.stderr

    if json_format:
        logger.add(
            log_sink,
            level=level.upper(),
            serialize=True,
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            log_sink,
            level=level.upper(),
            format=HUMAN_FORMAT,
            colorize=sink is None,
            backtrace=True,
            diagnose=False,
        )

    _intercept_standard_logging()

    _CONFIGURED = True
    logger.debug(f"Logging configured: level={level}, json_format={json_format}")


def _intercept_standard_logging() -> None:
    """Route stdlib logging records (sqlite3 adapters, asyncio) into loguru."""

    class InterceptHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            try:
                log_level = logger.level(record.levelname).name
            except ValueError:
                log_level = record.levelno

            frame, depth = logging.currentframe(), 2
            while frame is not None and frame.f_code.co_filename == logging.__file__:
                frame = frame.f_back
                depth += 1

            logger.opt(depth=depth, exception=record.exc_info).log(
                log_level, record.getMessage()
            )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def is_configured() -> bool:
    return _CONFIGURED


__all__ = ["configure_logging", "is_configured"]
