"""
Server-Sent Events (SSE) Session Registry

Live channel for submission status updates. Each user can hold several
connections (tabs); an event pushed for a user is fanned out to all of them.

Features:
- Heartbeat keep-alive (30s)
- Last-Event-ID replay (scoped to the user)
- Connection limits & backpressure
- Reconnection directives
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional, Dict, Any, Set
from uuid import uuid4

from fastapi import Request, HTTPException
from fastapi.responses import StreamingResponse

from ...core.observability import record_counter

logger = logging.getLogger(__name__)


@dataclass
class SSEConfig:
    """SSE configuration."""
    heartbeat_interval: int = 30  # seconds
    retry_interval: int = 3000  # milliseconds (sent to client)
    max_connections_per_user: int = 5
    max_total_connections: int = 1000
    event_replay_window: timedelta = timedelta(hours=1)
    slow_consumer_timeout: int = 30  # seconds
    backpressure_threshold: int = 100  # queued events


@dataclass
class SSEConnection:
    """Represents an active SSE connection."""
    id: str = field(default_factory=lambda: uuid4().hex)
    user_id: Optional[str] = None
    recommendation_id: Optional[str] = None  # Only events for this recommendation
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_event_id: Optional[str] = None
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=100))

    def __hash__(self):
        return hash(self.id)

    def wants(self, event: Dict[str, Any]) -> bool:
        if not self.recommendation_id:
            return True
        return event.get("data", {}).get("recommendation_id") == self.recommendation_id


class SSEManager:
    """
    Tracks SSE connections per user and pushes events to them.

    Implements the pipeline's SessionRegistry: push(user_id, event).
    """

    def __init__(self, config: SSEConfig = None):
        self.config = config or SSEConfig()
        self._connections: Set[SSEConnection] = set()
        self._user_connections: Dict[str, Set[SSEConnection]] = defaultdict(set)
        self._event_buffer: Dict[str, Dict[str, Any]] = {}  # event_id -> event
        self._buffer_order: list = []  # Ordered list of event_ids
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def user_connection_count(self, user_id: str) -> int:
        return len(self._user_connections.get(user_id, ()))

    async def connect(
        self,
        user_id: str,
        recommendation_id: Optional[str] = None,
        last_event_id: Optional[str] = None
    ) -> SSEConnection:
        """
        Register a new SSE connection.

        Raises:
            HTTPException: If connection limits exceeded
        """
        async with self._lock:
            if len(self._connections) >= self.config.max_total_connections:
                logger.warning(f"SSE max connections reached: {len(self._connections)}")
                raise HTTPException(
                    status_code=503,
                    detail="Server at capacity. Please try again later."
                )

            user_conns = self._user_connections[user_id]
            if len(user_conns) >= self.config.max_connections_per_user:
                logger.warning(f"SSE max connections for user {user_id}: {len(user_conns)}")
                raise HTTPException(
                    status_code=429,
                    detail="Too many connections. Please close some tabs."
                )

            conn = SSEConnection(
                user_id=user_id,
                recommendation_id=recommendation_id,
                last_event_id=last_event_id
            )

            self._connections.add(conn)
            user_conns.add(conn)

        record_counter("sse_connections_total")
        logger.info(f"SSE connected: {conn.id} (user: {user_id}, total: {len(self._connections)})")
        return conn

    async def disconnect(self, conn: SSEConnection):
        """Remove a connection."""
        async with self._lock:
            self._connections.discard(conn)
            if conn.user_id in self._user_connections:
                self._user_connections[conn.user_id].discard(conn)
                if not self._user_connections[conn.user_id]:
                    del self._user_connections[conn.user_id]

        logger.info(f"SSE disconnected: {conn.id} (total: {len(self._connections)})")

    async def push(self, user_id: str, event: Dict[str, Any]) -> int:
        """
        Send an event to every live connection of a user.

        Returns the number of connections the event was queued on.
        """
        sse_event = {
            "id": uuid4().hex,
            "type": event.get("type", "message"),
            "data": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "user_id": user_id,
        }
        await self._buffer_event(sse_event["id"], sse_event)

        delivered = 0
        for conn in list(self._user_connections.get(user_id, ())):
            if not conn.wants(sse_event):
                continue
            if conn.queue.qsize() >= self.config.backpressure_threshold:
                logger.warning(f"SSE backpressure on {conn.id}, dropping event")
                continue
            try:
                conn.queue.put_nowait(sse_event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"SSE queue full for {conn.id}")

        return delivered

    async def _buffer_event(self, event_id: str, event: Dict[str, Any]):
        """Buffer event for replay."""
        async with self._lock:
            self._event_buffer[event_id] = event
            self._buffer_order.append(event_id)

            # Clean old events outside replay window
            cutoff = datetime.now(timezone.utc) - self.config.event_replay_window
            while self._buffer_order:
                oldest = self._event_buffer.get(self._buffer_order[0])
                if oldest and datetime.fromisoformat(oldest["timestamp"]) >= cutoff:
                    break
                self._event_buffer.pop(self._buffer_order.pop(0), None)

    async def get_replay_events(self, user_id: str, last_event_id: str) -> list:
        """Get the user's events after the given event ID."""
        if not last_event_id:
            return []

        events = []
        found = False

        for event_id in self._buffer_order:
            if found:
                event = self._event_buffer.get(event_id)
                if event and event.get("user_id") == user_id:
                    events.append(event)
            elif event_id == last_event_id:
                found = True

        return events

    async def stream(self, conn: SSEConnection) -> AsyncGenerator[str, None]:
        """
        Generate SSE stream for a connection.

        Yields:
            SSE-formatted strings
        """
        yield f"retry: {self.config.retry_interval}\n\n"

        if conn.last_event_id:
            for event in await self.get_replay_events(conn.user_id, conn.last_event_id):
                if conn.wants(event):
                    yield self._format_event(event)

        heartbeat_task = asyncio.create_task(self._heartbeat(conn))

        try:
            while True:
                try:
                    event = await asyncio.wait_for(
                        conn.queue.get(),
                        timeout=self.config.slow_consumer_timeout
                    )
                    yield self._format_event(event)

                except asyncio.TimeoutError:
                    # Heartbeat keeps the connection alive
                    continue

        except asyncio.CancelledError:
            pass
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass
            await self.disconnect(conn)

    async def _heartbeat(self, conn: SSEConnection):
        """Send periodic heartbeats."""
        try:
            while True:
                await asyncio.sleep(self.config.heartbeat_interval)

                heartbeat = {
                    "id": f"heartbeat-{uuid4().hex[:8]}",
                    "type": "heartbeat",
                    "data": {"timestamp": datetime.now(timezone.utc).isoformat()},
                }

                try:
                    conn.queue.put_nowait(heartbeat)
                except asyncio.QueueFull:
                    logger.warning(f"Cannot send heartbeat to {conn.id}, queue full")
                    break

        except asyncio.CancelledError:
            pass

    @staticmethod
    def _format_event(event: Dict[str, Any]) -> str:
        """Format event as SSE."""
        lines = []

        if event.get("id"):
            lines.append(f"id: {event['id']}")

        if event.get("type") and event["type"] != "message":
            lines.append(f"event: {event['type']}")

        lines.append(f"data: {json.dumps(event.get('data', {}))}")

        return "\n".join(lines) + "\n\n"


async def create_sse_response(
    request: Request,
    manager: SSEManager,
    user_id: str,
    recommendation_id: Optional[str] = None
) -> StreamingResponse:
    """
    Create an SSE StreamingResponse with proper headers.

    Args:
        request: FastAPI request (Last-Event-ID is read from it)
        manager: Registry to attach the connection to
        user_id: User whose events are streamed
        recommendation_id: Optional filter

    Returns:
        StreamingResponse configured for SSE
    """
    conn = await manager.connect(
        user_id=user_id,
        recommendation_id=recommendation_id,
        last_event_id=request.headers.get("Last-Event-ID")
    )

    return StreamingResponse(
        manager.stream(conn),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        }
    )
