"""Structured logging configuration for tabstash.

This module standardizes logging using ``structlog``. It produces either JSON
(for machines) or a pretty console format (for humans) and binds the service
name so logs are useful when aggregated.

Typical usage
- Call ``configure_logging(service_name, log_level, log_format)`` at startup
- Acquire loggers via ``structlog.get_logger(name)`` or ``ServiceLogger``
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory, add_logger_name


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
) -> None:
    """Configure structured logging for a service.

    Parameters
    - service_name: Logical service identifier bound to each log line
    - log_level: ``DEBUG``, ``INFO``, ``WARNING``, ``ERROR`` (case-insensitive)
    - log_format: ``json`` for production; ``console`` for local dev
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_logger_name,
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class ServiceLogger:
    """Logger that carries a fixed context (e.g. a job id) on every event."""

    def __init__(self, name: str, **context: Any):
        self.name = name
        self.logger = structlog.get_logger(name)
        self.context = context

    def bind(self, **kwargs: Any) -> "ServiceLogger":
        """Return a new ``ServiceLogger`` with the merged context."""
        return ServiceLogger(self.name, **{**self.context, **kwargs})

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, **{**self.context, **kwargs})

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, **{**self.context, **kwargs})

    def error(self, message: str, **kwargs: Any) -> None:
        self.logger.error(message, **{**self.context, **kwargs})

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, **{**self.context, **kwargs})

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log an error with the active traceback."""
        self.logger.exception(message, **{**self.context, **kwargs})


def log_performance(operation: str, duration_ms: float, **kwargs: Any) -> None:
    """Log the duration of a unit of work.

    Parameters
    - operation: A stable identifier for the measured unit of work
    - duration_ms: Elapsed time in milliseconds
    - kwargs: Additional dimensions (e.g., mode, result count)
    """
    logger = get_logger("performance")
    logger.info(
        f"Operation {operation} completed",
        operation=operation,
        duration_ms=duration_ms,
        **kwargs
    )
