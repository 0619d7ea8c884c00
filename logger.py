#!/usr/bin/env python3
"""
Centralized logging for the chime detector.

Package modules obtain a logger with get_logger(__name__); the CLI entry
points call setup_logging() (or setup_logging_from_config()) once at startup.

Usage:
    from logger import get_logger
    log = get_logger(__name__)
    log.info("Detection session started")
    log.error("Capture read failed", exc_info=True)
"""
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class ColoredFormatter(logging.Formatter):
    """Color-coded log formatter for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        if not sys.stdout.isatty():
            return super().format(record)
        # Color a copy so the file handler still gets the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, '')
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def setup_logging(
    log_file: Optional[Path] = None,
    level: str = "INFO",
    debug: bool = False
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        log_file: Path to log file (if None, only console logging)
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        debug: If True, force DEBUG level (per-block decisions become visible)

    Returns:
        Root logger
    """
    if debug:
        level = "DEBUG"

    log_level = getattr(logging, str(level).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(ColoredFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    return root_logger


def setup_logging_from_config(config: Dict[str, Any], debug: bool = False) -> logging.Logger:
    """Configure logging from the ``logging`` section of the config."""
    log_cfg = config.get("logging", {})
    log_file = log_cfg.get("log_file")
    return setup_logging(
        log_file=Path(log_file) if log_file else None,
        level=log_cfg.get("level", "INFO"),
        debug=debug,
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def log_system_info(logger: logging.Logger) -> None:
    """Log interpreter and platform details for bug reports."""
    import platform
    import numpy

    logger.info("=" * 60)
    logger.info("SYSTEM INFORMATION")
    logger.info("=" * 60)
    logger.info(f"Platform: {platform.platform()}")
    logger.info(f"Python: {sys.version.split()[0]}")
    logger.info(f"NumPy: {numpy.__version__}")
    logger.info(f"Architecture: {platform.machine()}")
    logger.info("=" * 60)
