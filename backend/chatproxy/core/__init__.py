"""Core modules for logging, metrics, errors and observability."""

from chatproxy.core.logging import setup_logging, get_logger, CorrelationIdMiddleware
from chatproxy.core.metrics import setup_metrics

__all__ = [
    "setup_logging",
    "get_logger",
    "CorrelationIdMiddleware",
    "setup_metrics",
]
