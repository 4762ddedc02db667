"""
Observability module - Logging, Metrics, and Tracing.
"""

from entitlements.observability.logging import get_logger, log_context, setup_logging
from entitlements.observability.metrics import metrics
from entitlements.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "get_logger",
    "get_tracer",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
