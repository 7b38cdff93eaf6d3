"""Structured logging setup for codeloop."""

import logging
import sys
from typing import TextIO

import structlog

from codeloop.config import LoggingConfig


def configure_logging(config: LoggingConfig | None = None, stream: TextIO | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    ``format="json"`` renders one JSON object per line; ``console`` renders
    human-readable lines. Events below ``level`` are dropped. Output goes to
    ``stream`` (stderr by default).
    """
    config = config or LoggingConfig()
    log_level = getattr(logging, config.level.upper(), logging.INFO)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    # Module-level loggers are created at import; not caching them lets a
    # later configure_logging call take effect.
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
