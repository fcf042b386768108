"""
API Exception Classes

Custom exceptions that map to standard error responses.
"""

from typing import Optional, List

from .error_codes import ErrorCode, get_status_code
from .responses import ErrorDetail


class APIException(Exception):
    """
    Base exception for API errors.

    All custom API exceptions should inherit from this class.
    The error handler middleware will catch these and return
    standardized error responses.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[List[ErrorDetail]] = None,
        trace_id: Optional[str] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        self.trace_id = trace_id
        self.status_code = get_status_code(code)
        super().__init__(message)


class ValidationError(APIException):
    """
    Validation error for invalid request data.

    HTTP Status: 400
    """

    def __init__(
        self,
        message: str,
        details: Optional[List[ErrorDetail]] = None,
        trace_id: Optional[str] = None
    ):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details=details,
            trace_id=trace_id
        )


class UnauthorizedError(APIException):
    """
    Authentication required error.

    HTTP Status: 401
    """

    def __init__(
        self,
        message: str = "Authentication required",
        trace_id: Optional[str] = None
    ):
        super().__init__(
            code=ErrorCode.UNAUTHORIZED,
            message=message,
            trace_id=trace_id
        )


class ServiceUnavailableError(APIException):
    """
    A required component is not running or not configured.

    HTTP Status: 503
    """

    def __init__(
        self,
        message: str = "Service unavailable",
        trace_id: Optional[str] = None
    ):
        super().__init__(
            code=ErrorCode.SERVICE_UNAVAILABLE,
            message=message,
            trace_id=trace_id
        )


class InvalidSignatureError(APIException):
    """
    Inbound webhook signature missing, stale or wrong.

    HTTP Status: 401
    """

    def __init__(
        self,
        message: str = "Invalid webhook signature",
        trace_id: Optional[str] = None
    ):
        super().__init__(
            code=ErrorCode.INVALID_SIGNATURE,
            message=message,
            trace_id=trace_id
        )
