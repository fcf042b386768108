"""
OpenTelemetry Tracing

Tracer setup, W3C trace-context propagation for outbound deliveries and
inbound webhooks, and spans tagged with the submission they work on.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import extract, inject, set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

_tracer: Optional[trace.Tracer] = None
_propagator = TraceContextTextMapPropagator()


def init_tracing(
    service_name: str = "recdelivery-backend",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    sample_ratio: float = 1.0,
) -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service
        service_version: Version of the service
        otlp_endpoint: OTLP exporter endpoint (e.g., "http://localhost:4317")
        console_export: Enable console export for debugging
        sample_ratio: Share of new root traces kept; child spans follow their parent

    Returns:
        Configured tracer
    """
    global _tracer

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
    })
    sampler = ParentBased(TraceIdRatioBased(max(0.0, min(1.0, sample_ratio))))
    provider = TracerProvider(resource=resource, sampler=sampler)

    if otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)))
        logger.info(f"OTel tracing: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTel tracing: Console exporter enabled")

    trace.set_tracer_provider(provider)
    set_global_textmap(_propagator)
    _tracer = trace.get_tracer(service_name, service_version)

    logger.info(f"OTel tracing initialized: {service_name} v{service_version} (sample_ratio={sample_ratio})")
    return _tracer


def get_tracer() -> trace.Tracer:
    """Get the global tracer."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("recdelivery-backend")
    return _tracer


def get_current_span() -> Span:
    return trace.get_current_span()


def get_trace_id() -> Optional[str]:
    """Current trace ID as hex, None outside a recorded span."""
    context = get_current_span().get_span_context()
    if context.is_valid:
        return format(context.trace_id, "032x")
    return None


def get_span_id() -> Optional[str]:
    context = get_current_span().get_span_context()
    if context.is_valid:
        return format(context.span_id, "016x")
    return None


@contextmanager
def create_span(
    name: str,
    attributes: Optional[Dict[str, Any]] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL
) -> Iterator[Span]:
    """
    Create a new span as context manager. Exceptions mark the span as errored
    and propagate.

    Usage:
        with create_span("my_operation", {"key": "value"}) as span:
            span.set_attribute("result", "success")
    """
    with get_tracer().start_as_current_span(name, kind=kind, attributes=attributes or {}) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


@contextmanager
def submission_span(name: str, submission_id: str, **attributes: Any) -> Iterator[Span]:
    """
    Span for work on one submission.

    The id is recorded as `submission.id` and `correlation_id`; keyword
    attributes are recorded under `submission.` and None values are left out.

    Usage:
        with submission_span("submission.dispatch", record.id, university_id="mit") as span:
            ...
    """
    tags: Dict[str, Any] = {"submission.id": submission_id, "correlation_id": submission_id}
    for key, value in attributes.items():
        if value is not None:
            tags[f"submission.{key}"] = value
    with create_span(name, tags) as span:
        yield span


def inject_trace_context(carrier: Dict[str, str]) -> Dict[str, str]:
    """Write the current trace context into outbound headers."""
    inject(carrier)
    return carrier


def extract_trace_context(carrier: Dict[str, str]) -> trace.Context:
    """Read a trace context from inbound headers."""
    return extract(carrier)
