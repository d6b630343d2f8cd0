"""Structured logging for the hybrid search platform.

Everything logs through ``structlog`` with event-style messages and keyword
context (``business_id``, ``source``, ``results_count``...). Output is JSON
lines in deployed environments and a coloured console layout locally; both go
through the stdlib root logger so third-party libraries land in the same
stream.

Typical usage
- Call ``configure_logging_from_config(config)`` (or ``configure_logging``)
  once at startup
- Acquire loggers via ``structlog.get_logger(name)`` at module level
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory, add_logger_name


def _renderer(log_format: str):
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
) -> None:
    """Configure structured logging for a service.

    Parameters
    - service_name: Bound as ``service`` on every log line
    - log_level: ``DEBUG``, ``INFO``, ``WARNING``, ``ERROR`` (case-insensitive)
    - log_format: ``json`` for deployed environments; anything else renders
      for the console
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_logger_name,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(log_format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


def configure_logging_from_config(config: Any, service_name: str = "hybrid-query-engine") -> None:
    """Configure logging from a ``BaseConfig`` (``RAG_LOG_LEVEL``, ``RAG_LOG_FORMAT``)."""
    configure_logging(service_name, config.rag_log_level, config.rag_log_format)
    structlog.contextvars.bind_contextvars(environment=config.rag_env)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def log_performance(operation: str, duration_ms: float, **kwargs: Any) -> None:
    """Log the timing of a unit of work.

    Parameters
    - operation: Stable identifier of the measured work
    - duration_ms: Elapsed time in milliseconds
    - kwargs: Extra dimensions (tenant, result count...)
    """
    get_logger("performance").info(
        "Operation completed",
        operation=operation,
        duration_ms=round(duration_ms, 3),
        **kwargs
    )
