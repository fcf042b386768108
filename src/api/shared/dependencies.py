"""
Request Dependencies

Accessors for the objects the app lifespan places on app.state.
"""

from typing import Optional

from fastapi import Header, Request

from ...core.submissions import SubmissionPipeline
from .exceptions import ServiceUnavailableError, UnauthorizedError
from .security import check_admin_key
from .sse import SSEManager


def get_pipeline(request: Request) -> SubmissionPipeline:
    """The submission pipeline created at startup."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise ServiceUnavailableError("Submission pipeline not initialized")
    return pipeline


def get_sse_manager(request: Request) -> SSEManager:
    manager = getattr(request.app.state, "sse_manager", None)
    if manager is None:
        raise ServiceUnavailableError("Event stream not available")
    return manager


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Current user, as forwarded by the gateway in X-User-ID."""
    if not x_user_id:
        raise UnauthorizedError("X-User-ID header required")
    return x_user_id


def require_admin(request: Request) -> str:
    """
    Guard for operator endpoints.

    Returns the actor name recorded in audit entries (X-Actor, else "admin").
    """
    pipeline = get_pipeline(request)
    check_admin_key(request, pipeline.config.admin_api_key)
    return request.headers.get("X-Actor") or "admin"
