"""
Logging configuration for Marketplace Bridge.

Handlers live on the package logger ``marketplace_bridge`` only: a colored
console stream and, unless LOG_DIR is empty, one rotating log file. Module
loggers carry no handlers and propagate to it. Configured from the LOG_LEVEL,
LOG_DIR and DEBUG_MODE environment variables.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

import colorlog


PACKAGE_LOGGER = "marketplace_bridge"
LOG_FILE_NAME = f"{PACKAGE_LOGGER}.log"

DETAILED_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
SIMPLE_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}

_configured = False


def _console_handler(debug_mode: bool) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    line_format = DETAILED_FORMAT if debug_mode else SIMPLE_FORMAT
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s" + line_format,
        datefmt=DATE_FORMAT,
        log_colors=LOG_COLORS,
    ))
    return handler


def _file_handler(log_dir: str, debug_mode: bool) -> logging.Handler:
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=5,
        encoding='utf-8',
        delay=True,
    )
    handler.setFormatter(logging.Formatter(
        DETAILED_FORMAT if debug_mode else SIMPLE_FORMAT,
        datefmt=DATE_FORMAT,
    ))
    return handler


def configure_package_logger() -> logging.Logger:
    """
    (Re)build the handlers of the package logger from the environment.

    Existing handlers are closed first, so at most one file handler ever
    writes the log file.
    """
    global _configured

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = os.getenv("LOG_DIR", "./logs")
    debug_mode = os.getenv("DEBUG_MODE", "false").lower() == "true"

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, log_level, logging.INFO))

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    package_logger.addHandler(_console_handler(debug_mode))
    # An empty LOG_DIR disables file logging
    if log_dir:
        package_logger.addHandler(_file_handler(log_dir, debug_mode))

    package_logger.propagate = False
    _configured = True
    return package_logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger instance for the given name.

    Args:
        name: Logger name. If None, uses the caller's module name.

    Returns:
        Logger that reports through the package logger's handlers.
    """
    if name is None:
        frame = sys._getframe(1)
        name = frame.f_globals.get('__name__', PACKAGE_LOGGER)

    if not _configured:
        configure_package_logger()
    return logging.getLogger(name)


def setup_logging() -> None:
    """
    Setup application-wide logging configuration.

    Call once at application startup, after the environment is final.
    """
    logger = configure_package_logger()
    logger.info("Logging system initialized")
    logger.debug(f"Log level: {logging.getLevelName(logger.level)}")
    logger.debug(f"Handlers: {[h.__class__.__name__ for h in logger.handlers]}")


def mask_secret(value: Optional[str], visible: int = 6) -> str:
    """Return a log-safe preview of a secret: its prefix and length only."""
    if not value:
        return "MISSING"
    return f"{value[:visible]}... (len={len(value)})"
