"""Fixtures for HTTP API tests (FastAPI)."""

from __future__ import annotations

from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

import trellis.api as api_module
from tests._engine_factory import make_engine
from trellis.api import create_app
from trellis.core import TicketEngine


@pytest.fixture
def api_engine(tmp_path: Path) -> Generator[TicketEngine, None, None]:
    """SQLite-backed engine opened with check_same_thread=False for the ASGI app."""
    engine = make_engine(tmp_path, backend="sqlite", check_same_thread=False)
    yield engine
    engine.close()


@pytest.fixture
async def client(api_engine: TicketEngine) -> AsyncIterator[AsyncClient]:
    """Test client bound to ``api_engine`` through the module-level engine slot."""
    api_module._engine = api_engine
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    api_module._engine = None
