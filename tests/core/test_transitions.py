"""Workflow-governed status changes and the activity trail they leave."""

from __future__ import annotations

import pytest

from tests._engine_factory import FakeClock
from trellis.core import TicketEngine
from trellis.errors import InvalidTransitionError, ValidationError
from trellis.models import Board
from trellis.storage import ActivityQuery


class TestMoveTicket:
    def test_illegal_jump_is_rejected_with_allowed_targets(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "Fix login")
        assert t.status == "backlog"

        with pytest.raises(InvalidTransitionError) as exc_info:
            engine.move_ticket(t.id, "done")

        err = exc_info.value
        assert err.from_state == "backlog"
        assert err.to_state == "done"
        assert err.allowed == ("todo",)
        assert err.code == "invalid_transition"
        assert "Allowed: todo" in str(err)
        assert engine.get_ticket(t.id).status == "backlog"
        assert [a.action for a in engine.get_activity(t.id)] == ["created"]

    def test_invalid_transition_is_a_validation_error(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        with pytest.raises(ValidationError):
            engine.move_ticket(t.id, "review")

    def test_legal_chain_records_status_changes_in_order(self, engine: TicketEngine, board: Board, clock: FakeClock) -> None:
        t = engine.create_ticket(board.id, "Fix login")
        clock.advance(minutes=5)
        engine.update_ticket(t.id, {"status": "todo"})
        clock.advance(minutes=5)
        engine.update_ticket(t.id, {"status": "in_progress"})

        trail = engine.get_activity(t.id)
        assert [a.action for a in trail] == ["created", "status_changed", "status_changed"]
        assert trail[1].changes == {"status": {"old": "backlog", "new": "todo"}}
        assert trail[2].changes == {"status": {"old": "todo", "new": "in_progress"}}

    def test_same_status_is_not_a_transition(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        result = engine.move_ticket(t.id, "backlog")
        assert result.status == "backlog"
        assert len(engine.get_activity(t.id)) == 1

    def test_status_with_other_fields_is_status_changed(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        engine.update_ticket(t.id, {"status": "todo", "priority": "high"})
        latest = engine.get_activity(t.id)[-1]
        assert latest.action == "status_changed"
        assert set(latest.changes) == {"status", "priority"}

    def test_rejected_update_writes_nothing(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "Keep me")
        with pytest.raises(InvalidTransitionError):
            engine.update_ticket(t.id, {"status": "done", "title": "Changed"})
        assert engine.get_ticket(t.id).title == "Keep me"

    def test_undeclared_target(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        with pytest.raises(InvalidTransitionError) as exc_info:
            engine.move_ticket(t.id, "archived")
        assert exc_info.value.allowed == ("todo",)

    def test_terminal_state_has_no_targets(self, engine: TicketEngine) -> None:
        support = engine.create_board("Helpdesk", workflow_id="support")
        t = engine.create_ticket(support.id, "Printer", status="closed")
        assert engine.get_valid_transitions(t.id) == []
        with pytest.raises(InvalidTransitionError, match="Allowed: none") as exc_info:
            engine.move_ticket(t.id, "open")
        assert exc_info.value.allowed == ()

    def test_backward_move_allowed_when_declared(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X", status="review")
        assert engine.move_ticket(t.id, "in_progress").status == "in_progress"


class TestValidTransitions:
    def test_follows_workflow_order(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X", status="todo")
        assert engine.get_valid_transitions(t.id) == ["backlog", "in_progress"]

    def test_custom_workflow(self, engine: TicketEngine) -> None:
        engine.create_workflow(
            {
                "id": "triage",
                "name": "Triage",
                "states": ["inbox", "accepted", "rejected"],
                "transitions": {"inbox": ["accepted", "rejected"]},
            }
        )
        b = engine.create_board("Triage board", workflow_id="triage")
        t = engine.create_ticket(b.id, "Report")
        assert t.status == "inbox"
        assert engine.get_valid_transitions(t.id) == ["accepted", "rejected"]
        engine.move_ticket(t.id, "rejected")
        assert engine.get_valid_transitions(t.id) == []


class TestActivityFeed:
    def test_limit_keeps_latest_entries_in_chronological_order(
        self, engine: TicketEngine, board: Board, clock: FakeClock
    ) -> None:
        t = engine.create_ticket(board.id, "X")
        for title in ("one", "two", "three"):
            clock.advance(minutes=1)
            engine.update_ticket(t.id, {"title": title})
        feed = engine.get_activity(t.id, limit=2)
        assert [a.changes["title"]["new"] for a in feed] == ["two", "three"]

    def test_newest_first(self, engine: TicketEngine, board: Board, clock: FakeClock) -> None:
        t = engine.create_ticket(board.id, "X")
        clock.advance(minutes=1)
        engine.move_ticket(t.id, "todo")
        feed = engine.get_activity(t.id, newest_first=True)
        assert [a.action for a in feed] == ["status_changed", "created"]

    @pytest.mark.parametrize("limit", [0, 1001])
    def test_limit_bounds(self, engine: TicketEngine, board: Board, limit: int) -> None:
        t = engine.create_ticket(board.id, "X")
        with pytest.raises(ValidationError, match="limit"):
            engine.get_activity(t.id, limit=limit)

    def test_activity_entries_are_append_only(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "X")
        first = engine.get_activity(t.id)[0]
        engine.update_ticket(t.id, {"title": "Y"})
        again = engine.get_activity(t.id)[0]
        assert again.id == first.id
        assert again.changes == first.changes


class TestQueryActivity:
    def test_filters_by_action_across_tickets(self, engine: TicketEngine, board: Board, clock: FakeClock) -> None:
        a = engine.create_ticket(board.id, "A")
        b = engine.create_ticket(board.id, "B")
        clock.advance(minutes=1)
        engine.move_ticket(a.id, "todo")
        engine.add_comment(b.id, "note")
        moves = engine.query_activity(ActivityQuery(actions=frozenset({"status_changed"})))
        assert [(m.ticket_id, m.changes["status"]["new"]) for m in moves] == [(a.id, "todo")]

    def test_unknown_action_rejected(self, engine: TicketEngine) -> None:
        with pytest.raises(ValidationError, match="Unknown activity action"):
            engine.query_activity(ActivityQuery(actions=frozenset({"teleported"})))

    def test_inverted_window_rejected(self, engine: TicketEngine) -> None:
        with pytest.raises(ValidationError, match="must not be after"):
            engine.query_activity(ActivityQuery(since="2024-06-05T00:00:00+00:00", until="2024-06-01T00:00:00+00:00"))
