"""Observability for the cloud controller.

structlog-rendered logging with request correlation, plus Prometheus
metrics for broker calls, deletions and async polling.
"""

from .logging import CONTEXT_KEYS, configure_logging, get_logger, request_context
from .metrics import metrics_text

__all__ = [
    "CONTEXT_KEYS",
    "configure_logging",
    "get_logger",
    "metrics_text",
    "request_context",
]
