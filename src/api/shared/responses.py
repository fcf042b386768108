"""
Standard API Response Models

Every endpoint answers with `{"data": ..., "meta": ...}` on success and
`{"error": ...}` on failure. `meta.correlation_id` carries the
recommendation a submission belongs to, so the records of one
recommendation can be followed across calls and log lines.
"""

from datetime import datetime, timezone
from typing import Any, Generic, List, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field, field_serializer

from .error_codes import ErrorCode

T = TypeVar('T')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_timestamp(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _trace_id(trace_id: Optional[str]) -> str:
    return trace_id or str(uuid4())


class ResponseMeta(BaseModel):
    """Metadata included in all responses."""

    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return _format_timestamp(value)


class SuccessResponse(BaseModel, Generic[T]):
    """
    Single-object response.

    Response shape:
    {
        "data": {"id": "sub-...", "status": "submitted", ...},
        "meta": {
            "trace_id": "4bf92f3577b34da6a3ce929d0e0e4736",
            "correlation_id": "rec-456",
            "timestamp": "2026-01-19T12:00:00Z"
        }
    }
    """

    data: T
    meta: ResponseMeta = Field(default_factory=ResponseMeta)

    @classmethod
    def create(
        cls,
        data: T,
        correlation_id: Optional[str] = None,
        trace_id: Optional[str] = None
    ) -> "SuccessResponse[T]":
        meta = ResponseMeta(trace_id=_trace_id(trace_id), correlation_id=correlation_id)
        return cls(data=data, meta=meta)


class ListMeta(ResponseMeta):
    """Metadata for list responses with pagination."""

    total: int = 0
    limit: int = 20
    offset: int = 0
    has_more: bool = False


class ListResponse(BaseModel, Generic[T]):
    """
    List response. Unpaginated lists (a recommendation's submissions, an
    audit trail) report their own length as the limit.

    Response shape:
    {
        "data": [ ... ],
        "meta": {"total": 100, "limit": 20, "offset": 0, "has_more": true, "trace_id": "..."}
    }
    """

    data: List[T]
    meta: ListMeta

    @classmethod
    def create(
        cls,
        data: List[T],
        total: int,
        limit: Optional[int] = None,
        offset: int = 0,
        correlation_id: Optional[str] = None,
        trace_id: Optional[str] = None
    ) -> "ListResponse[T]":
        meta = ListMeta(
            trace_id=_trace_id(trace_id),
            correlation_id=correlation_id,
            total=total,
            limit=len(data) if limit is None else limit,
            offset=offset,
            has_more=(offset + len(data)) < total
        )
        return cls(data=data, meta=meta)


class ErrorDetail(BaseModel):
    """One field-level problem in a rejected request."""

    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class ErrorBody(BaseModel):
    """Error body with code, message, and details."""

    code: str
    message: str
    details: Optional[List[ErrorDetail]] = None
    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return _format_timestamp(value)

    @classmethod
    def for_code(
        cls,
        code: Any,
        message: str,
        details: Optional[List[ErrorDetail]] = None,
        trace_id: Optional[str] = None
    ) -> "ErrorBody":
        """Build a body from an ErrorCode (or a plain code string)."""
        return cls(
            code=code.value if isinstance(code, ErrorCode) else str(code),
            message=message,
            details=details,
            trace_id=_trace_id(trace_id),
        )


class ErrorResponse(BaseModel):
    """
    Error response, documented on every router.

    Response shape:
    {
        "error": {
            "code": "INVALID_STATE_TRANSITION",
            "message": "Cannot move submission sub-1 from pending to pending",
            "details": null,
            "trace_id": "abc-123",
            "timestamp": "2026-01-19T12:00:00Z"
        }
    }
    """

    error: ErrorBody
