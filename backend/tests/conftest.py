"""Test fixtures for the backend test suite."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from backend.api.config import Settings
from backend.api.dependencies import Services, build_services
from backend.api.main import app
from bustrack.storage import MemoryStore
from tests.conftest import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(clock: FakeClock) -> Services:
    """Fresh managers around an in-memory store, with no external APIs."""
    settings = Settings(
        storage_backend="memory",
        traffic_api_key="",
        connectivity_probe_url="",
    )
    return build_services(settings, MemoryStore(), clock=clock)


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async HTTP test client wired to the FastAPI app.

    ASGITransport does not run the lifespan, so the services are installed
    on ``app.state`` directly and detached afterwards.
    """
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    services.offline.detach()
