"""Loguru sinks for the CLI and the API server."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
    "<level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {process} | {name}:{function}:{line} - {message}"


def setup_logger(log_level: str = "INFO", log_file: Optional[str] = None, serialize: bool = False) -> None:
    """
    Replace loguru's sinks with a coloured stderr sink and, when `log_file`
    is set, a rotating zip-compressed file sink.

    `serialize=True` writes the file sink as one JSON record per line.
    Safe to call more than once; earlier sinks are dropped.
    """
    level = log_level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, colorize=True, diagnose=False)

    if not log_file:
        return

    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_file,
        level=level,
        format=_FILE_FORMAT,
        serialize=serialize,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
    )
    logger.debug(f"[Logger] level={level} file={log_file} serialize={serialize}")
