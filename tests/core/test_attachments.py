"""Attachment metadata records."""

from __future__ import annotations

import pytest

from trellis.core import TicketEngine
from trellis.errors import NotFoundError, ValidationError
from trellis.models import Board


class TestAttachments:
    def test_add_and_get(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        a = engine.add_attachment(
            t.id,
            filename="trace.log",
            mime_type="text/plain",
            size_bytes=2048,
            storage_ref="s3://bucket/trace.log",
            uploaded_by="alice",
            original_filename="trace (1).log",
        )
        fetched = engine.get_attachment(a.id)
        assert fetched.id.startswith("at-")
        assert fetched.ticket_id == t.id
        assert fetched.filename == "trace.log"
        assert fetched.original_filename == "trace (1).log"
        assert fetched.mime_type == "text/plain"
        assert fetched.size_bytes == 2048
        assert fetched.storage_ref == "s3://bucket/trace.log"
        assert fetched.uploaded_by == "alice"

    def test_original_filename_defaults_to_filename(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        a = engine.add_attachment(t.id, filename="shot.png")
        assert a.original_filename == "shot.png"
        assert a.mime_type == "application/octet-stream"

    def test_list_and_delete(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        keep = engine.add_attachment(t.id, filename="a.txt")
        drop = engine.add_attachment(t.id, filename="b.txt")
        engine.delete_attachment(drop.id)
        assert [a.id for a in engine.list_attachments(t.id)] == [keep.id]
        with pytest.raises(NotFoundError):
            engine.get_attachment(drop.id)

    @pytest.mark.parametrize("size", [-1, 1.5, True])
    def test_bad_size(self, engine: TicketEngine, board: Board, size: object) -> None:
        t = engine.create_ticket(board.id, "X")
        with pytest.raises(ValidationError, match="size_bytes"):
            engine.add_attachment(t.id, filename="a.txt", size_bytes=size)  # type: ignore[arg-type]

    def test_missing_filename(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        with pytest.raises(ValidationError, match="filename"):
            engine.add_attachment(t.id, filename="")

    def test_missing_ticket(self, engine: TicketEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.add_attachment("tk-missing", filename="a.txt")

    def test_delete_missing(self, engine: TicketEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.delete_attachment("at-missing")

    def test_attaching_adds_no_activity(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        engine.add_attachment(t.id, filename="a.txt")
        assert len(engine.get_activity(t.id)) == 1
