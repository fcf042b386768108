"""
Event Stream Endpoints

Live submission status updates over Server-Sent Events. Clients that
cannot hold a stream poll GET /api/submissions instead.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ..dependencies import get_sse_manager, get_user_id
from ..sse import SSEManager, create_sse_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("/stream")
async def event_stream(
    request: Request,
    recommendation_id: Optional[str] = Query(None, description="Only events for this recommendation"),
    user_id: str = Depends(get_user_id),
    manager: SSEManager = Depends(get_sse_manager),
):
    """
    Server-Sent Events stream of the current user's submission updates.

    Features:
    - Heartbeat every 30 seconds
    - Supports Last-Event-ID for replay
    - Can filter by recommendation_id

    Headers:
    - X-User-ID: user whose submissions are streamed
    - Last-Event-ID: (optional) Resume from this event
    """
    return await create_sse_response(
        request=request,
        manager=manager,
        user_id=user_id,
        recommendation_id=recommendation_id
    )


@router.get("/stream/status")
async def stream_status(manager: SSEManager = Depends(get_sse_manager)):
    """Get SSE connection statistics."""
    return {
        "total_connections": manager.connection_count,
        "max_connections": manager.config.max_total_connections,
        "heartbeat_interval_seconds": manager.config.heartbeat_interval,
        "replay_window_hours": manager.config.event_replay_window.total_seconds() / 3600
    }
