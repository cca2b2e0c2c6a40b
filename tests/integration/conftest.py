"""Integration test fixtures: the HTTP API over the test engine."""

from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from unitpay_engine.api.app import create_app
from unitpay_engine.engine import SettlementEngine


@pytest_asyncio.fixture
async def client(engine: SettlementEngine) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app serving the test engine."""
    app = create_app(engine)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
