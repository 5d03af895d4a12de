"""
Observability module - Logging, Metrics, and Tracing.
"""

from timeline_ai.observability.logging import get_logger, log_context, setup_logging
from timeline_ai.observability.metrics import metrics
from timeline_ai.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
