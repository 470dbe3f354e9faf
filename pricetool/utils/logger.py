"""Structured logging configuration."""
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.stdlib import LoggerFactory


def _handler(stream_or_path, level: int, rotating: bool = False) -> logging.Handler:
    if rotating:
        handler = RotatingFileHandler(
            stream_or_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=10,
        )
    else:
        handler = logging.StreamHandler(stream_or_path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    log_dir: str = "logs",
) -> None:
    """
    Configure structured logging for ingestion runs.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json" or "console")
        log_file: Optional log file name; when unset, logs go to stderr
        log_dir: Directory for log files (default: "logs")
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, log_level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Repeated configuration (tests, CLI re-entry) must not stack handlers
    root_logger.handlers = []

    if log_file:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_handler(log_path / log_file, level, rotating=True))
        if os.getenv("ENVIRONMENT", "development") == "development":
            root_logger.addHandler(_handler(sys.stderr, level))
    else:
        root_logger.addHandler(_handler(sys.stderr, level))


def get_logger(name: str) -> Any:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
