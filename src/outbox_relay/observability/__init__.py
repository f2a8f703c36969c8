"""
Observability Module

Provides distributed tracing, metrics collection, and structured logging.
"""

from .tracing import (
    init_tracing,
    get_tracer,
    get_current_span,
    get_trace_id,
    create_span,
    trace_headers,
)
from .metrics import (
    init_metrics,
    RelayMetrics,
)
from .logging import configure_logging

__all__ = [
    # Tracing
    "init_tracing",
    "get_tracer",
    "get_current_span",
    "get_trace_id",
    "create_span",
    "trace_headers",
    # Metrics
    "init_metrics",
    "RelayMetrics",
    # Logging
    "configure_logging",
]
