"""
Integration Test Fixtures
"""

import pytest
from httpx import AsyncClient, ASGITransport

from src.api.delivery.main import create_app
from src.api.shared.sse import SSEManager


@pytest.fixture
def sse_manager():
    return SSEManager()


@pytest.fixture
async def client(pipeline, sse_manager):
    """Client for an app over the open (unsigned, keyless) pipeline."""
    app = create_app(pipeline=pipeline, sse_manager=sse_manager)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

