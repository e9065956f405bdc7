"""
Structured Logging with Structlog.

Provides JSON-formatted logs with request IDs and context. API key secrets and
their hashes are never logged; log the lookup prefix or key id instead.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from creditgate.config import settings


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "credit_debited",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "creditgate.services.ledger",
        "service": "creditgate-api",
        "version": "0.1.0",
        "request_id": "req-123",
        ...additional context
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("credit_debited", account_id=str(account_id), amount=1)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(request_id="req-123", platform="tiktok"):
            logger.info("pipeline_started")
            # All logs within this context include request_id and platform

    Values already bound by an outer context are restored on exit.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._previous: dict[str, Any] = {}

    def __enter__(self) -> None:
        current = structlog.contextvars.get_contextvars()
        self._previous = {k: current[k] for k in self.context if k in current}
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
        if self._previous:
            structlog.contextvars.bind_contextvars(**self._previous)
