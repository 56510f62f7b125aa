"""Structured JSON logging to .trellis/trellis.log."""

from __future__ import annotations

import json
import logging
from collections.abc import Generator
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from trellis.logging import setup_logging


@pytest.fixture(autouse=True)
def _reset_trellis_logger() -> Generator[None, None, None]:
    logger = logging.getLogger("trellis")
    original_level = logger.level
    yield
    for h in logger.handlers[:]:
        if isinstance(h, RotatingFileHandler):
            logger.removeHandler(h)
            h.close()
    logger.setLevel(original_level)


def _file_handlers() -> list[RotatingFileHandler]:
    return [h for h in logging.getLogger("trellis").handlers if isinstance(h, RotatingFileHandler)]


class TestSetupLogging:
    def test_writes_json_lines(self, tmp_path: Path) -> None:
        setup_logging(tmp_path)
        logging.getLogger("trellis.core").info("hello %s", "world")

        [line] = (tmp_path / "trellis.log").read_text().splitlines()
        entry = json.loads(line)
        assert entry["level"] == "INFO"
        assert entry["logger"] == "trellis.core"
        assert entry["msg"] == "hello world"
        assert "ts" in entry

    def test_extra_fields(self, tmp_path: Path) -> None:
        setup_logging(tmp_path)
        logging.getLogger("trellis.api").warning(
            "api_call", extra={"op": "GET /api/boards", "args_data": {"limit": "5"}, "duration_ms": 1.5, "error": "boom"}
        )
        entry = json.loads((tmp_path / "trellis.log").read_text().splitlines()[-1])
        assert entry["op"] == "GET /api/boards"
        assert entry["args"] == {"limit": "5"}
        assert entry["duration_ms"] == 1.5
        assert entry["error"] == "boom"

    def test_exception_message_included(self, tmp_path: Path) -> None:
        setup_logging(tmp_path)
        try:
            msg = "disk full"
            raise RuntimeError(msg)
        except RuntimeError:
            logging.getLogger("trellis.storage_sqlite").exception("write failed")
        entry = json.loads((tmp_path / "trellis.log").read_text().splitlines()[-1])
        assert entry["exception"] == "disk full"

    def test_same_directory_is_idempotent(self, tmp_path: Path) -> None:
        setup_logging(tmp_path)
        setup_logging(tmp_path)
        assert len(_file_handlers()) == 1

    def test_new_directory_replaces_handler(self, tmp_path: Path) -> None:
        first = tmp_path / "a"
        second = tmp_path / "b"
        first.mkdir()
        second.mkdir()
        setup_logging(first)
        setup_logging(second)
        [handler] = _file_handlers()
        assert Path(handler.baseFilename) == (second / "trellis.log").resolve()

    def test_level(self, tmp_path: Path) -> None:
        setup_logging(tmp_path, level=logging.WARNING)
        logging.getLogger("trellis.core").info("dropped")
        logging.getLogger("trellis.core").warning("kept")
        lines = (tmp_path / "trellis.log").read_text().splitlines()
        assert [json.loads(line)["msg"] for line in lines] == ["kept"]
