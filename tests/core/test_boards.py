"""Board CRUD, workflow binding, and cascading deletes."""

from __future__ import annotations

import pytest

from tests._engine_factory import FakeClock
from trellis.core import TicketEngine
from trellis.errors import NotFoundError, ValidationError
from trellis.models import Board
from trellis.storage import ActivityQuery


class TestCreateBoard:
    def test_defaults_to_engine_default_workflow(self, engine: TicketEngine) -> None:
        b = engine.create_board("Sprint 12")
        assert b.id.startswith("bd-")
        assert b.workflow_id == "kanban"
        assert b.description == ""
        assert b.metadata == {}

    def test_explicit_workflow_and_metadata(self, engine: TicketEngine) -> None:
        b = engine.create_board("Support", workflow_id="support", metadata={"team": "ops", "sla_hours": 4})
        fetched = engine.get_board(b.id)
        assert fetched.workflow_id == "support"
        assert fetched.metadata == {"team": "ops", "sla_hours": 4}

    def test_caller_supplied_id(self, engine: TicketEngine) -> None:
        b = engine.create_board("Ops", board_id="ops")
        assert engine.get_board("ops").name == b.name

    def test_duplicate_id_rejected(self, engine: TicketEngine) -> None:
        engine.create_board("Ops", board_id="ops")
        with pytest.raises(ValidationError, match="already exists"):
            engine.create_board("Ops again", board_id="ops")

    def test_unknown_workflow(self, engine: TicketEngine) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            engine.create_board("X", workflow_id="waterfall")
        assert exc_info.value.kind == "workflow"

    def test_blank_name(self, engine: TicketEngine) -> None:
        with pytest.raises(ValidationError, match="name"):
            engine.create_board("  ")

    def test_list_newest_first(self, engine: TicketEngine, clock: FakeClock) -> None:
        a = engine.create_board("A")
        clock.advance(minutes=1)
        b = engine.create_board("B")
        assert [x.id for x in engine.list_boards()] == [b.id, a.id]


class TestUpdateBoard:
    def test_rename(self, engine: TicketEngine, board: Board, clock: FakeClock) -> None:
        clock.advance(hours=2)
        updated = engine.update_board(board.id, {"name": "Renamed", "metadata": {"k": "v"}})
        assert updated.name == "Renamed"
        assert updated.metadata == {"k": "v"}
        assert updated.updated_at == "2024-06-03T11:00:00+00:00"
        assert updated.created_at == board.created_at

    def test_no_change_keeps_timestamp(self, engine: TicketEngine, board: Board, clock: FakeClock) -> None:
        clock.advance(hours=2)
        assert engine.update_board(board.id, {"name": board.name}).updated_at == board.updated_at

    def test_unknown_field(self, engine: TicketEngine, board: Board) -> None:
        with pytest.raises(ValidationError, match="Unknown board field"):
            engine.update_board(board.id, {"owner": "alice"})

    def test_switch_workflow_when_states_fit(self, engine: TicketEngine, board: Board) -> None:
        engine.create_ticket(board.id, "X", status="backlog")
        updated = engine.update_board(board.id, {"workflow_id": "scrum"})
        assert updated.workflow_id == "scrum"
        assert engine.get_board_workflow(board.id).id == "scrum"

    def test_switch_workflow_that_strands_tickets(self, engine: TicketEngine, board: Board) -> None:
        engine.create_ticket(board.id, "X", status="review")
        with pytest.raises(ValidationError, match="review"):
            engine.update_board(board.id, {"workflow_id": "scrum"})
        assert engine.get_board(board.id).workflow_id == "kanban"

    def test_missing_board(self, engine: TicketEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.update_board("bd-missing", {"name": "X"})


class TestDeleteBoard:
    def test_cascades_to_everything_the_board_owns(self, engine: TicketEngine, board: Board) -> None:
        parent = engine.create_ticket(board.id, "Epic")
        child = engine.create_subtask(parent.id, "Piece")
        comment = engine.add_comment(child.id, "note", "alice")
        attachment = engine.add_attachment(parent.id, filename="design.pdf", mime_type="application/pdf")
        engine.take_snapshot(board.id)

        engine.delete_board(board.id)

        with pytest.raises(NotFoundError):
            engine.get_board(board.id)
        assert engine.storage.get_ticket(parent.id) is None
        assert engine.storage.get_ticket(child.id) is None
        assert engine.storage.get_comment(comment.id) is None
        assert engine.storage.get_attachment(attachment.id) is None
        assert engine.storage.list_activities(ActivityQuery(ticket_ids=(parent.id, child.id))) == []
        assert engine.storage.list_snapshots(board.id, "2000-01-01", "2100-01-01") == []

    def test_other_boards_untouched(self, engine: TicketEngine, board: Board) -> None:
        other = engine.create_board("Other")
        survivor = engine.create_ticket(other.id, "Stays")
        engine.create_ticket(board.id, "Goes")
        engine.delete_board(board.id)
        assert engine.get_ticket(survivor.id).title == "Stays"
        assert [b.id for b in engine.list_boards()] == [other.id]

    def test_missing_board(self, engine: TicketEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.delete_board("bd-missing")
