"""
Observability module - Logging, Metrics, and Tracing.
"""

from creditgate.observability.logging import get_logger, log_context, setup_logging
from creditgate.observability.metrics import metrics
from creditgate.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
