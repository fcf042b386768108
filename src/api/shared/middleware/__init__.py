"""
Shared API Middleware

Provides cross-cutting concerns for all API endpoints:
- Error handling with standardized responses
- Trace ID propagation for observability
- Correlation ID support for related requests
"""

from .error_handler import register_error_handlers, error_code_for
from .trace import TraceMiddleware, get_trace_id

__all__ = [
    # Error handling
    "register_error_handlers",
    "error_code_for",
    # Trace
    "TraceMiddleware",
    "get_trace_id",
]
