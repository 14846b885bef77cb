"""
Logging system for the API drift monitor.

This module provides console and rotating-file logging with the levels
INFO, WARN, ERROR, DEBUG and FATAL, in either text or JSON format.
"""

import json
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

ROOT_LOGGER_NAME = "apidrift"

# Define log levels
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "FATAL": logging.CRITICAL
}


class JsonFormatter(logging.Formatter):
    """Formatter that renders each record as one JSON object per line."""

    def format(self, record):
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_record["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        # Structured context attached through log_with_context
        if hasattr(record, "context"):
            log_record["context"] = record.context

        return json.dumps(log_record, default=str)


class ColoredFormatter(logging.Formatter):
    """Formatter that adds colors to console output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m"
    }

    def __init__(self):
        super().__init__(
            "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
            "%Y-%m-%d %H:%M:%S"
        )

    def format(self, record):
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        return f"{color}{super().format(record)}{self.COLORS['RESET']}"


def setup_logger(config: Optional[Dict[str, Any]] = None) -> None:
    """
    Set up the logging system based on configuration.

    Args:
        config: The ``logging`` section of the monitor configuration
    """
    if config is None:
        config = {}

    log_level = LOG_LEVELS.get(str(config.get("level", "INFO")).upper(), logging.INFO)
    log_format = str(config.get("format", "text")).lower()
    log_output = config.get("output")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_output:
        log_dir = os.path.dirname(log_output)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_output,
            maxBytes=config.get("max_size", 10 * 1024 * 1024),
            backupCount=config.get("backup_count", 5)
        )
        file_handler.setLevel(log_level)

        if log_format == "json":
            file_handler.setFormatter(JsonFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
                "%Y-%m-%d %H:%M:%S"
            ))

        root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the monitor's logger namespace.

    Args:
        name: Short component name, e.g. ``"resolver"``

    Returns:
        Logger instance named ``apidrift.<name>``
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_with_context(logger: logging.Logger, level: str, message: str,
                     context: Optional[Dict[str, Any]] = None) -> None:
    """
    Log a message with additional structured context.

    Args:
        logger: Logger instance
        level: Log level (DEBUG, INFO, WARN, ERROR, FATAL)
        message: Log message
        context: Additional context rendered by the JSON formatter
    """
    level_no = LOG_LEVELS.get(level.upper(), logging.INFO)
    logger.log(level_no, message, extra={"context": context or {}})
