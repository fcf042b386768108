"""
Observability Module

Provides distributed tracing, metrics collection, and structured logging
for the delivery service.
"""

from .tracing import (
    init_tracing,
    get_tracer,
    get_trace_id,
    get_span_id,
    create_span,
    submission_span,
    inject_trace_context,
    extract_trace_context,
)
from .metrics import (
    init_metrics,
    get_meter,
    record_counter,
    record_histogram,
)
from .logging import StructuredFormatter, configure_logging

__all__ = [
    # Tracing
    "init_tracing",
    "get_tracer",
    "get_trace_id",
    "get_span_id",
    "create_span",
    "submission_span",
    "inject_trace_context",
    "extract_trace_context",
    # Metrics
    "init_metrics",
    "get_meter",
    "record_counter",
    "record_histogram",
    # Logging
    "StructuredFormatter",
    "configure_logging",
]
