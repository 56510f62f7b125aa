"""Shared pytest fixtures for trellis tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from tests._engine_factory import BACKENDS, FakeClock, make_engine
from trellis.core import DB_FILENAME, TRELLIS_DIR_NAME, TicketEngine, write_config
from trellis.models import Board
from trellis.storage_sqlite import SQLiteStorage


@pytest.fixture
def clock() -> FakeClock:
    """Clock pinned to 2024-06-03T09:00:00Z."""
    return FakeClock()


@pytest.fixture(params=BACKENDS)
def backend(request: pytest.FixtureRequest) -> str:
    """Every engine-level test runs once per storage backend."""
    return str(request.param)


@pytest.fixture
def engine(tmp_path: Path, backend: str, clock: FakeClock) -> Generator[TicketEngine, None, None]:
    """Fresh TicketEngine for each test, on each backend."""
    e = make_engine(tmp_path, backend=backend, clock=clock)
    yield e
    e.close()


@pytest.fixture
def board(engine: TicketEngine) -> Board:
    """A kanban board: backlog -> todo -> in_progress -> review -> done."""
    return engine.create_board("Platform", description="Core platform work")


@pytest.fixture
def trellis_project(tmp_path: Path) -> Path:
    """A tmp directory set up as a trellis project (.trellis/ with config + db).

    Returns the project root (parent of .trellis/).
    """
    trellis_dir = tmp_path / TRELLIS_DIR_NAME
    trellis_dir.mkdir()
    write_config(trellis_dir, {"name": "proj", "version": 1, "storage": "sqlite", "default_workflow": "kanban"})

    with SQLiteStorage(trellis_dir / DB_FILENAME) as storage:
        storage.init()

    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
