"""
OpenTelemetry Tracing

An event is usually enqueued inside a traced request but delivered
later by a relay in another process. The W3C traceparent of the
enqueueing span is stored in the event metadata, and the relay opens
its delivery span as a child of it, so one trace covers the business
operation and every delivery attempt of the events it produced.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "txoutbox"

# Metadata/header keys written by the propagator
TRACE_KEYS = ("traceparent", "tracestate")

_propagator = TraceContextTextMapPropagator()


def init_tracing(
    service_name: str = "txoutbox",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False
) -> TracerProvider:
    """
    Install a tracer provider for this process.

    Spans are exported over OTLP/gRPC when ``otlp_endpoint`` is given
    (e.g. "http://localhost:4317"). Without any exporter spans are still
    created, so trace ids keep flowing into logs and event metadata.
    """
    provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
    }))

    if otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        )
        logger.info(f"Tracing: exporting spans to {otlp_endpoint}")
    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    logger.info(f"Tracing initialized for {service_name} v{service_version}")
    return provider


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


def get_trace_id() -> Optional[str]:
    """Hex trace id of the active span, or None outside a trace."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        return format(ctx.trace_id, "032x")
    return None


def get_span_id() -> Optional[str]:
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        return format(ctx.span_id, "016x")
    return None


@contextmanager
def create_span(
    name: str,
    attributes: Optional[Dict[str, Any]] = None,
    context: Optional[Context] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL
) -> Iterator[Span]:
    """
    Open a span; an exception escaping the block marks it as an error.

    Usage:
        with create_span("outbox.deliver", {"outbox.event_type": "board.renamed"}) as span:
            ...
    """
    with get_tracer().start_as_current_span(
        name,
        context=context,
        kind=kind,
        attributes=attributes or {},
        record_exception=False,
        set_status_on_exception=False
    ) as span:
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, f"{type(e).__name__}: {e}"))
            raise


def inject_trace_context(carrier: Dict[str, Any]) -> Dict[str, Any]:
    """
    Write the active trace context into ``carrier`` (event metadata or
    HTTP headers). Keys already present are left alone, so a requeued
    event keeps pointing at the trace that produced it.
    """
    if any(key in carrier for key in TRACE_KEYS):
        return carrier
    _propagator.inject(carrier)
    return carrier


def extract_trace_context(carrier: Optional[Mapping[str, Any]]) -> Context:
    """Rebuild the parent context stored by inject_trace_context."""
    headers = {
        key: str(carrier[key])
        for key in TRACE_KEYS
        if carrier and carrier.get(key) is not None
    }
    return _propagator.extract(headers)
