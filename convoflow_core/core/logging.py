"""Structured logging setup."""

import logging
import sys

import structlog


def configure_logging(level: str = "info", json_logs: bool = True) -> None:
    """
    Configure structlog on top of the stdlib logging module.

    Args:
        level: Minimum log level name
        json_logs: Render JSON lines; otherwise use the console renderer
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "convoflow", **context) -> structlog.stdlib.BoundLogger:
    """Get a logger bound to the given context."""
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger
