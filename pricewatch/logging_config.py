"""Logging setup for pricewatch."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "pricewatch"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    console: bool = True,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """Install handlers on the ``pricewatch`` logger.

    Args:
        level: Logging level for the namespace logger and its handlers
        log_file: Optional file to mirror log output into
        console: Whether to log to stdout
        format_string: Custom log format string

    Returns:
        The configured namespace logger
    """
    formatter = logging.Formatter(format_string or DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the pricewatch namespace."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
