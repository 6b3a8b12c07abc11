"""
Observability: OpenTelemetry tracing and metrics, JSON logging.
"""

from .logging import StructuredFormatter, TraceContextFilter, configure_logging
from .metrics import INSTRUMENTS, get_meter, init_metrics, record_counter, record_histogram
from .tracing import (
    create_span,
    extract_trace_context,
    get_span_id,
    get_trace_id,
    get_tracer,
    init_tracing,
    inject_trace_context,
)

__all__ = [
    "init_tracing",
    "get_tracer",
    "get_trace_id",
    "get_span_id",
    "create_span",
    "inject_trace_context",
    "extract_trace_context",
    "INSTRUMENTS",
    "init_metrics",
    "get_meter",
    "record_counter",
    "record_histogram",
    "configure_logging",
    "StructuredFormatter",
    "TraceContextFilter",
]
