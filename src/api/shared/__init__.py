"""
Shared API Utilities

Common utilities, responses, and middleware for all API endpoints.
"""

from .responses import (
    ResponseMeta,
    SuccessResponse,
    ListMeta,
    ListResponse,
    ErrorDetail,
    ErrorBody,
    ErrorResponse,
)

from .error_codes import (
    ErrorCode,
    get_status_code,
)

from .exceptions import (
    APIException,
    ValidationError,
    UnauthorizedError,
    ServiceUnavailableError,
    InvalidSignatureError,
)

from .middleware import (
    register_error_handlers,
    TraceMiddleware,
    get_trace_id,
)

__all__ = [
    # Responses
    "ResponseMeta",
    "SuccessResponse",
    "ListMeta",
    "ListResponse",
    "ErrorDetail",
    "ErrorBody",
    "ErrorResponse",
    # Error codes
    "ErrorCode",
    "get_status_code",
    # Exceptions
    "APIException",
    "ValidationError",
    "UnauthorizedError",
    "ServiceUnavailableError",
    "InvalidSignatureError",
    # Middleware
    "register_error_handlers",
    "TraceMiddleware",
    "get_trace_id",
]
