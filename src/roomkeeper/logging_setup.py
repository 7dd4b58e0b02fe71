"""Logging configuration for roomkeeper.

Everything logs below the ``roomkeeper`` logger; handlers are attached there
once per process. The daemon wants timestamps on the console, interactive
CLI commands do not.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, LoggingConfig

ROOT_LOGGER = "roomkeeper"
QUIET_LOGGERS = ("httpx", "httpcore")

TIMESTAMPED_FORMAT = "%(asctime)s %(levelname)-5s [%(name)-22s] %(message)s"
PLAIN_FORMAT = "%(levelname)-5s [%(name)-22s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_initialized = False


def _resolve_level(log_config: LoggingConfig, verbose: bool) -> int:
    if verbose:
        return logging.DEBUG
    level = logging.getLevelName(log_config.level.upper())
    return level if isinstance(level, int) else logging.INFO


def _console_handler(level: int, timestamps: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if timestamps:
        handler.setFormatter(logging.Formatter(TIMESTAMPED_FORMAT, datefmt=DATE_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
    return handler


def _file_handler(log_config: LoggingConfig, level: int) -> logging.Handler:
    path = Path(log_config.file)
    path.parent.mkdir(parents=True, exist_ok=True)
    if log_config.rotate:
        handler = RotatingFileHandler(
            path,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
        )
    else:
        handler = logging.FileHandler(path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(TIMESTAMPED_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(config: Config, verbose: bool = False, daemon_mode: bool = False) -> None:
    """Attach console and/or file handlers per ``[logging]``.

    Calling it again is a no-op until reset_logging().
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level = _resolve_level(log_config, verbose)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    if log_config.output in ("console", "both"):
        logger.addHandler(_console_handler(level, timestamps=daemon_mode))
    if log_config.output in ("file", "both") and log_config.file:
        logger.addHandler(_file_handler(log_config, level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def reset_logging() -> None:
    """Drop handlers and allow setup_logging() to run again (tests)."""
    global _initialized
    _initialized = False
    logging.getLogger(ROOT_LOGGER).handlers.clear()
