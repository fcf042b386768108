"""
Tests for the SSE session registry.
"""

import json

import pytest
from fastapi import HTTPException

from src.api.shared.sse import SSEConfig, SSEManager


def status_event(recommendation_id="rec-1", status="submitted"):
    return {
        "type": "submission.status",
        "submission_id": "sub-1",
        "recommendation_id": recommendation_id,
        "status": status,
    }


class TestConnections:
    """Test connection bookkeeping and limits."""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self):
        manager = SSEManager()
        conn = await manager.connect("user-1")

        assert manager.connection_count == 1
        assert manager.user_connection_count("user-1") == 1

        await manager.disconnect(conn)
        assert manager.connection_count == 0
        assert manager.user_connection_count("user-1") == 0

    @pytest.mark.asyncio
    async def test_per_user_limit(self):
        manager = SSEManager(SSEConfig(max_connections_per_user=2))
        await manager.connect("user-1")
        await manager.connect("user-1")

        with pytest.raises(HTTPException) as exc_info:
            await manager.connect("user-1")
        assert exc_info.value.status_code == 429

        await manager.connect("user-2")

    @pytest.mark.asyncio
    async def test_total_limit(self):
        manager = SSEManager(SSEConfig(max_total_connections=1))
        await manager.connect("user-1")

        with pytest.raises(HTTPException) as exc_info:
            await manager.connect("user-2")
        assert exc_info.value.status_code == 503


class TestPush:
    """Test fan-out to a user's connections."""

    @pytest.mark.asyncio
    async def test_fan_out_to_all_tabs(self):
        manager = SSEManager()
        a = await manager.connect("user-1")
        b = await manager.connect("user-1")
        other = await manager.connect("user-2")

        delivered = await manager.push("user-1", status_event())

        assert delivered == 2
        assert a.queue.qsize() == 1
        assert b.queue.qsize() == 1
        assert other.queue.qsize() == 0

    @pytest.mark.asyncio
    async def test_recommendation_filter(self):
        manager = SSEManager()
        conn = await manager.connect("user-1", recommendation_id="rec-2")

        assert await manager.push("user-1", status_event("rec-1")) == 0
        assert await manager.push("user-1", status_event("rec-2")) == 1
        assert conn.queue.get_nowait()["data"]["recommendation_id"] == "rec-2"

    @pytest.mark.asyncio
    async def test_offline_user(self):
        manager = SSEManager()
        assert await manager.push("user-9", status_event()) == 0

    @pytest.mark.asyncio
    async def test_backpressure_drops_events(self):
        manager = SSEManager(SSEConfig(backpressure_threshold=2))
        conn = await manager.connect("user-1")

        results = [await manager.push("user-1", status_event()) for _ in range(3)]

        assert results == [1, 1, 0]
        assert conn.queue.qsize() == 2


class TestReplay:
    """Test Last-Event-ID replay."""

    @pytest.mark.asyncio
    async def test_replays_user_events_after_id(self):
        manager = SSEManager()
        await manager.push("user-1", status_event(status="pending"))
        first_id = manager._buffer_order[0]
        await manager.push("user-2", status_event(status="pending"))
        await manager.push("user-1", status_event(status="submitted"))

        events = await manager.get_replay_events("user-1", first_id)

        assert [e["data"]["status"] for e in events] == ["submitted"]

    @pytest.mark.asyncio
    async def test_no_last_event_id(self):
        manager = SSEManager()
        await manager.push("user-1", status_event())
        assert await manager.get_replay_events("user-1", "") == []

    @pytest.mark.asyncio
    async def test_stream_replays_then_yields_live(self):
        manager = SSEManager()
        await manager.push("user-1", status_event(status="pending"))
        last_id = manager._buffer_order[0]
        await manager.push("user-1", status_event(status="submitted"))

        conn = await manager.connect("user-1", last_event_id=last_id)
        stream = manager.stream(conn)

        assert await stream.__anext__() == "retry: 3000\n\n"
        replayed = await stream.__anext__()
        assert "event: submission.status" in replayed
        assert json.loads(replayed.split("data: ", 1)[1])["status"] == "submitted"

        await manager.push("user-1", status_event(status="confirmed"))
        live = await stream.__anext__()
        assert json.loads(live.split("data: ", 1)[1])["status"] == "confirmed"

        await stream.aclose()
        assert manager.connection_count == 0


def test_format_event():
    text = SSEManager._format_event({"id": "e1", "type": "message", "data": {"a": 1}})
    assert text == 'id: e1\ndata: {"a": 1}\n\n'
