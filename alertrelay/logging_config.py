"""
Structured logging configuration using structlog.

JSON lines in every environment except local development, where the
console renderer is easier to read. The API process and the arq worker
both call configure_logging once at startup.
"""
import logging
import sys

import structlog

from alertrelay.config import settings


def configure_logging(level: int | None = None, json_output: bool | None = None):
    """Configure stdlib logging and structlog."""
    if level is None:
        level = logging.DEBUG if settings.DEBUG else logging.INFO
    if json_output is None:
        json_output = settings.ENVIRONMENT != "development"

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # httpx logs every outbound request at INFO; deliveries already log their own attempt
    logging.getLogger("httpx").setLevel(logging.WARNING)

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(**context):
    """Logger with context bound, e.g. get_logger(component="worker")."""
    return structlog.get_logger().bind(**context)
