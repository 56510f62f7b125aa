"""Cumulative-flow snapshots, read-out, and reconstruction from activity history."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from tests._engine_factory import FakeClock
from trellis.core import TicketEngine
from trellis.errors import NotFoundError, ValidationError
from trellis.models import Board

ZERO = {"backlog": 0, "todo": 0, "in_progress": 0, "review": 0, "done": 0}


def _counts(**nonzero: int) -> dict[str, int]:
    return {**ZERO, **nonzero}


class TestTakeSnapshot:
    def test_counts_every_state(self, engine: TicketEngine, board: Board) -> None:
        engine.create_ticket(board.id, "A")
        t = engine.create_ticket(board.id, "B")
        engine.move_ticket(t.id, "todo")
        assert engine.take_snapshot(board.id) == _counts(backlog=1, todo=1)

    def test_defaults_to_today_utc(self, engine: TicketEngine, board: Board) -> None:
        engine.create_ticket(board.id, "A")
        engine.take_snapshot(board.id)
        [record] = engine.get_cfd_data(board.id, "2024-06-01", "2024-06-30")
        assert record["date"] == "2024-06-03"

    def test_same_day_snapshot_overwrites(self, engine: TicketEngine, board: Board) -> None:
        t = engine.create_ticket(board.id, "A")
        engine.take_snapshot(board.id)
        engine.move_ticket(t.id, "todo")
        engine.take_snapshot(board.id)
        records = engine.get_cfd_data(board.id, "2024-06-03", "2024-06-03")
        assert records == [{"date": "2024-06-03", "counts": _counts(todo=1)}]

    def test_explicit_day(self, engine: TicketEngine, board: Board) -> None:
        engine.create_ticket(board.id, "A")
        engine.take_snapshot(board.id, date(2024, 5, 31))
        assert [r["date"] for r in engine.get_cfd_data(board.id, "2024-05-01", "2024-06-30")] == ["2024-05-31"]

    def test_empty_board(self, engine: TicketEngine, board: Board) -> None:
        assert engine.take_snapshot(board.id) == ZERO

    def test_unknown_board(self, engine: TicketEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.take_snapshot("bd-missing")


class TestGetCfdData:
    def test_only_dates_with_rows_in_range(self, engine: TicketEngine, board: Board) -> None:
        engine.create_ticket(board.id, "A")
        for day in ("2024-05-30", "2024-06-01", "2024-06-03"):
            engine.take_snapshot(board.id, day)
        records = engine.get_cfd_data(board.id, "2024-05-31", "2024-06-03")
        assert [r["date"] for r in records] == ["2024-06-01", "2024-06-03"]
        assert all(r["counts"] == _counts(backlog=1) for r in records)

    def test_start_after_end(self, engine: TicketEngine, board: Board) -> None:
        with pytest.raises(ValidationError, match="must not be after"):
            engine.get_cfd_data(board.id, "2024-06-05", "2024-06-01")

    def test_bad_date(self, engine: TicketEngine, board: Board) -> None:
        with pytest.raises(ValidationError, match="start"):
            engine.get_cfd_data(board.id, "last week", "2024-06-01")

    def test_boards_are_isolated(self, engine: TicketEngine, board: Board) -> None:
        other = engine.create_board("Other")
        engine.create_ticket(other.id, "Elsewhere")
        engine.take_snapshot(other.id)
        assert engine.get_cfd_data(board.id, "2024-06-01", "2024-06-30") == []


class TestBackfill:
    @pytest.fixture
    def history(self, engine: TicketEngine, board: Board, clock: FakeClock) -> dict[str, str]:
        """Three days of history on the kanban board.

        06-01 10:00  A, B created (backlog)
        06-02 10:00  A -> todo
        06-03 10:00  A -> in_progress; C created
        Clock left at 06-03 12:00.
        """
        clock.set(datetime(2024, 6, 1, 10, 0, tzinfo=UTC))
        a = engine.create_ticket(board.id, "A")
        b = engine.create_ticket(board.id, "B")
        clock.set(datetime(2024, 6, 2, 10, 0, tzinfo=UTC))
        engine.move_ticket(a.id, "todo")
        clock.set(datetime(2024, 6, 3, 10, 0, tzinfo=UTC))
        engine.move_ticket(a.id, "in_progress")
        c = engine.create_ticket(board.id, "C")
        clock.set(datetime(2024, 6, 3, 12, 0, tzinfo=UTC))
        return {"a": a.id, "b": b.id, "c": c.id}

    def test_reconstructs_each_day(self, engine: TicketEngine, board: Board, history: dict[str, str]) -> None:
        written = engine.backfill_snapshots(board.id, "2024-06-01", "2024-06-03")
        assert written == {
            "2024-06-01": _counts(backlog=2),
            "2024-06-02": _counts(backlog=1, todo=1),
            "2024-06-03": _counts(backlog=2, in_progress=1),
        }
        assert [r["counts"] for r in engine.get_cfd_data(board.id, "2024-06-01", "2024-06-03")] == list(written.values())

    def test_end_clamped_to_today(self, engine: TicketEngine, board: Board, history: dict[str, str]) -> None:
        written = engine.backfill_snapshots(board.id, "2024-06-02", "2024-06-30")
        assert list(written) == ["2024-06-02", "2024-06-03"]

    def test_future_range_is_empty(self, engine: TicketEngine, board: Board, history: dict[str, str]) -> None:
        assert engine.backfill_snapshots(board.id, "2024-07-01", "2024-07-05") == {}

    def test_existing_snapshots_are_not_overwritten(
        self, engine: TicketEngine, board: Board, history: dict[str, str]
    ) -> None:
        engine.storage.upsert_snapshot(board.id, "done", "2024-06-02", 7)
        written = engine.backfill_snapshots(board.id, "2024-06-01", "2024-06-03")
        assert list(written) == ["2024-06-01", "2024-06-03"]
        [kept] = engine.get_cfd_data(board.id, "2024-06-02", "2024-06-02")
        assert kept["counts"] == _counts(done=7)

    def test_second_run_writes_nothing(self, engine: TicketEngine, board: Board, history: dict[str, str]) -> None:
        engine.backfill_snapshots(board.id, "2024-06-01", "2024-06-03")
        assert engine.backfill_snapshots(board.id, "2024-06-01", "2024-06-03") == {}

    def test_days_before_any_ticket_are_zero(self, engine: TicketEngine, board: Board, history: dict[str, str]) -> None:
        written = engine.backfill_snapshots(board.id, "2024-05-31", "2024-05-31")
        assert written == {"2024-05-31": ZERO}

    def test_range_too_large(self, engine: TicketEngine, board: Board) -> None:
        with pytest.raises(ValidationError, match="too large"):
            engine.backfill_snapshots(board.id, "2000-01-01", "2024-06-03")

    def test_start_after_end(self, engine: TicketEngine, board: Board) -> None:
        with pytest.raises(ValidationError):
            engine.backfill_snapshots(board.id, "2024-06-03", "2024-06-01")
