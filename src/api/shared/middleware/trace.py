"""
Trace ID Middleware

Adds trace_id and correlation_id to every request, opens an OpenTelemetry
server span continuing any incoming trace context, and records request
metrics.
"""

import contextvars
import time
from uuid import uuid4

from fastapi import Request
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from ....core.observability import (
    extract_trace_context,
    get_tracer,
    record_counter,
    record_histogram,
)

# Context variables for request-scoped values
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")

# Probes are answered without a span or metrics
UNTRACED_PATHS = frozenset({"/health", "/health/live", "/health/ready"})


def get_trace_id() -> str:
    """
    Get the current trace ID.

    Returns the trace ID from the current request context,
    or generates a new one if not set.
    """
    return trace_id_var.get() or str(uuid4())


class TraceMiddleware(BaseHTTPMiddleware):
    """
    Middleware that extracts or generates trace/correlation IDs.

    Headers:
    - X-Trace-ID: Unique ID for this request (generated if not provided)
    - X-Correlation-ID: ID linking related requests (e.g., recommendation_id)
    - traceparent: W3C trace context, continued by the request span
    """

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("X-Trace-ID") or str(uuid4())
        trace_id_var.set(trace_id)

        correlation_id = request.headers.get("X-Correlation-ID") or ""
        correlation_id_var.set(correlation_id)

        request.state.trace_id = trace_id
        request.state.correlation_id = correlation_id

        if request.url.path in UNTRACED_PATHS:
            response = await call_next(request)
        else:
            response = await self._traced(request, call_next, trace_id, correlation_id)

        response.headers["X-Trace-ID"] = trace_id
        if correlation_id:
            response.headers["X-Correlation-ID"] = correlation_id

        return response

    async def _traced(self, request: Request, call_next, trace_id: str, correlation_id: str):
        context = extract_trace_context(dict(request.headers))
        start_time = time.time()

        with get_tracer().start_as_current_span(
            f"{request.method} {request.url.path}",
            context=context,
            kind=trace.SpanKind.SERVER,
            attributes={
                "http.method": request.method,
                "http.route": request.url.path,
                "http.user_agent": request.headers.get("user-agent", ""),
                "trace_id": trace_id,
            },
        ) as span:
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)

            try:
                response = await call_next(request)
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                span.record_exception(e)
                record_counter("http_requests_total", 1, {
                    "method": request.method,
                    "path": request.url.path,
                    "status": "500",
                })
                raise

            span.set_attribute("http.status_code", response.status_code)
            record_counter("http_requests_total", 1, {
                "method": request.method,
                "path": request.url.path,
                "status": str(response.status_code),
            })
            record_histogram("http_request_duration_seconds", time.time() - start_time, {
                "method": request.method,
                "path": request.url.path,
            })
            return response
