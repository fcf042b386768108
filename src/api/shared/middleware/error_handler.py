"""
Global Error Handler Middleware

Catches exceptions and returns standardized error responses.
"""

import logging
import traceback

from fastapi import Request, FastAPI
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from ....core.submissions.errors import (
    AlreadyQueuedError,
    DeliveryError,
    DuplicateConfirmationError,
    InvalidPriorityError,
    InvalidStateTransitionError,
    QueueClaimConflict,
    RecipientNotFoundError,
    RecommendationNotFoundError,
    SubmissionError,
    SubmissionNotFoundError,
)
from ..exceptions import APIException
from ..responses import ErrorBody, ErrorDetail
from ..error_codes import ErrorCode, get_status_code
from ..security import sanitize_error_message
from .trace import get_trace_id

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
SUBMISSION_ERROR_CODES = (
    (SubmissionNotFoundError, ErrorCode.SUBMISSION_NOT_FOUND),
    (RecommendationNotFoundError, ErrorCode.RECOMMENDATION_NOT_FOUND),
    (RecipientNotFoundError, ErrorCode.RECIPIENT_NOT_FOUND),
    (AlreadyQueuedError, ErrorCode.ALREADY_QUEUED),
    (InvalidStateTransitionError, ErrorCode.INVALID_STATE_TRANSITION),
    (InvalidPriorityError, ErrorCode.INVALID_PRIORITY),
    (DuplicateConfirmationError, ErrorCode.CONFLICT),
    (QueueClaimConflict, ErrorCode.CONFLICT),
    (DeliveryError, ErrorCode.EXTERNAL_SERVICE_ERROR),
)


def error_code_for(exc: SubmissionError) -> ErrorCode:
    """Map a pipeline error to its API error code."""
    for error_type, code in SUBMISSION_ERROR_CODES:
        if isinstance(exc, error_type):
            return code
    return ErrorCode.BAD_REQUEST


def register_error_handlers(app: FastAPI):
    """
    Register all error handlers on the FastAPI app.

    This function sets up exception handlers for:
    - APIException (custom API errors)
    - SubmissionError (pipeline errors)
    - RequestValidationError (FastAPI validation)
    - Generic Exception (catch-all for unexpected errors)
    """

    @app.exception_handler(APIException)
    async def api_exception_handler(request: Request, exc: APIException):
        """Handle custom API exceptions."""
        trace_id = exc.trace_id or get_trace_id()

        logger.warning(
            f"API Error: {exc.code} - {exc.message}",
            extra={
                "trace_id": trace_id,
                "error_code": str(exc.code),
                "path": request.url.path
            }
        )

        error_body = ErrorBody.for_code(exc.code, exc.message, details=exc.details, trace_id=trace_id)

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": error_body.model_dump(mode="json")}
        )

    @app.exception_handler(SubmissionError)
    async def submission_exception_handler(request: Request, exc: SubmissionError):
        """Handle errors raised by the delivery pipeline."""
        trace_id = get_trace_id()
        code = error_code_for(exc)

        logger.warning(
            f"Submission Error: {code.value} - {exc.message}",
            extra={
                "trace_id": trace_id,
                "error_code": code.value,
                "submission_id": exc.submission_id,
                "path": request.url.path
            }
        )

        error_body = ErrorBody.for_code(code, sanitize_error_message(exc), trace_id=trace_id)

        return JSONResponse(
            status_code=get_status_code(code),
            content={"error": error_body.model_dump(mode="json")}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle FastAPI validation errors."""
        trace_id = get_trace_id()

        details = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            details.append(ErrorDetail(
                field=field,
                message=error["msg"],
                code=error["type"]
            ))

        logger.warning(
            f"Validation Error: {len(details)} field(s)",
            extra={
                "trace_id": trace_id,
                "path": request.url.path,
                "errors": [d.model_dump() for d in details]
            }
        )

        error_body = ErrorBody.for_code(
            ErrorCode.VALIDATION_ERROR, "Request validation failed", details=details, trace_id=trace_id
        )

        return JSONResponse(
            status_code=get_status_code(ErrorCode.VALIDATION_ERROR),
            content={"error": error_body.model_dump(mode="json")}
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        trace_id = get_trace_id()

        logger.error(
            f"Unhandled Exception: {type(exc).__name__}: {sanitize_error_message(exc)}",
            extra={
                "trace_id": trace_id,
                "path": request.url.path,
                "traceback": traceback.format_exc()
            }
        )

        # Don't expose internal details
        error_body = ErrorBody.for_code(
            ErrorCode.INTERNAL_ERROR, "An internal error occurred", trace_id=trace_id
        )

        return JSONResponse(
            status_code=get_status_code(ErrorCode.INTERNAL_ERROR),
            content={"error": error_body.model_dump(mode="json")}
        )
