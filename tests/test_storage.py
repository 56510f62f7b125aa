"""Storage adapter conformance: both backends must behave identically."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from pathlib import Path

import pytest

from tests._engine_factory import make_storage
from trellis.errors import StorageError
from trellis.storage import ActivityQuery, StorageAdapter, TicketQuery
from trellis.storage_sqlite import CURRENT_SCHEMA_VERSION, SQLiteStorage

TS = "2024-06-03T09:00:00+00:00"


@pytest.fixture
def storage(tmp_path: Path, backend: str) -> Generator[StorageAdapter, None, None]:
    s = make_storage(backend, tmp_path)
    s.init()
    yield s
    s.close()


def _board(storage: StorageAdapter, board_id: str = "bd-1") -> str:
    storage.create_board({"id": board_id, "name": "B", "workflow_id": "kanban", "created_at": TS, "updated_at": TS})
    return board_id


def _ticket(storage: StorageAdapter, ticket_id: str, board_id: str = "bd-1", **extra: object) -> str:
    storage.create_ticket(
        {"id": ticket_id, "board_id": board_id, "title": ticket_id, "status": "backlog", "created_at": TS, "updated_at": TS, **extra}
    )
    return ticket_id


class TestLookupContract:
    def test_missing_ids_return_none(self, storage: StorageAdapter) -> None:
        assert storage.get_board("nope") is None
        assert storage.get_ticket("nope") is None
        assert storage.get_comment("nope") is None
        assert storage.get_attachment("nope") is None
        assert storage.get_workflow("nope") is None

    def test_update_missing_returns_none(self, storage: StorageAdapter) -> None:
        assert storage.update_ticket("nope", {"title": "x"}) is None
        assert storage.update_board("nope", {"name": "x"}) is None

    def test_delete_missing_returns_false(self, storage: StorageAdapter) -> None:
        assert storage.delete_ticket("nope") is False
        assert storage.delete_board("nope") is False
        assert storage.delete_comment("nope") is False
        assert storage.delete_attachment("nope") is False

    def test_generated_ids(self, storage: StorageAdapter) -> None:
        board = storage.create_board({"name": "B", "workflow_id": "kanban"})
        assert board.id.startswith("bd-")
        ticket = storage.create_ticket({"board_id": board.id, "title": "T", "status": "backlog"})
        assert ticket.id.startswith("tk-")
        assert ticket.created_at


class TestStructuredFields:
    def test_round_trip_unchanged(self, storage: StorageAdapter) -> None:
        _board(storage)
        custom = {"points": 3, "ratio": 0.5, "flag": False, "none": None, "nested": {"list": [1, "two", {"three": 3}]}}
        _ticket(storage, "tk-1", labels=["b", "a"], assignees=["alice"], custom_fields=custom, position=1.5)
        t = storage.get_ticket("tk-1")
        assert t is not None
        assert t.labels == ["b", "a"]
        assert t.assignees == ["alice"]
        assert t.custom_fields == custom
        assert t.position == 1.5

    def test_integral_position_comes_back_as_int(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-1", position=3)
        t = storage.get_ticket("tk-1")
        assert t is not None
        assert t.position == 3
        assert isinstance(t.position, int)

    def test_activity_changes_round_trip(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-1")
        changes = {"labels": {"old": ["a"], "new": ["a", "b"]}, "custom_fields": {"old": {}, "new": {"k": {"v": 1}}}}
        storage.create_activity({"ticket_id": "tk-1", "actor": "x", "action": "updated", "changes": changes, "created_at": TS})
        [activity] = storage.list_activities(ActivityQuery(ticket_id="tk-1"))
        assert activity.changes == changes

    def test_workflow_round_trip(self, storage: StorageAdapter) -> None:
        kanban = storage.get_workflow("kanban")
        assert kanban is not None
        assert kanban.is_builtin
        assert kanban.allowed_targets("todo") == ("backlog", "in_progress")
        assert kanban.initial_state == "backlog"

    def test_update_merges_only_supplied_keys(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-1", labels=["keep"], priority="high")
        updated = storage.update_ticket("tk-1", {"title": "New", "updated_at": "2024-06-04T00:00:00+00:00"})
        assert updated is not None
        assert updated.title == "New"
        assert updated.labels == ["keep"]
        assert updated.priority == "high"
        assert updated.updated_at == "2024-06-04T00:00:00+00:00"


class TestQueries:
    def test_ticket_ordering(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-late", position=2)
        _ticket(storage, "tk-first", position=1)
        _ticket(storage, "tk-newer", position=2, created_at="2024-06-04T00:00:00+00:00")
        assert [t.id for t in storage.list_tickets(TicketQuery(board_id="bd-1"))] == ["tk-first", "tk-newer", "tk-late"]

    def test_offset_without_limit(self, storage: StorageAdapter) -> None:
        _board(storage)
        for i in range(3):
            _ticket(storage, f"tk-{i}", position=i)
        assert [t.id for t in storage.list_tickets(TicketQuery(offset=1))] == ["tk-1", "tk-2"]

    def test_search_is_case_insensitive(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-1", description="Mentions the DATABASE")
        assert [t.id for t in storage.list_tickets(TicketQuery(search="database"))] == ["tk-1"]

    def test_search_folds_non_ascii_case(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-1", title="Émile login")
        _ticket(storage, "tk-2", description="Ärger beim Export")
        assert [t.id for t in storage.list_tickets(TicketQuery(search="émile"))] == ["tk-1"]
        assert [t.id for t in storage.list_tickets(TicketQuery(search="ÄRGER"))] == ["tk-2"]

    def test_activity_filters(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-1")
        _ticket(storage, "tk-2")
        for ticket_id, action, ts in [
            ("tk-1", "created", "2024-06-01T00:00:00+00:00"),
            ("tk-1", "status_changed", "2024-06-02T00:00:00+00:00"),
            ("tk-2", "status_changed", "2024-06-03T00:00:00+00:00"),
            ("tk-2", "commented", "2024-06-04T00:00:00+00:00"),
        ]:
            storage.create_activity({"ticket_id": ticket_id, "actor": "x", "action": action, "changes": {}, "created_at": ts})

        moves = storage.list_activities(ActivityQuery(actions=frozenset({"status_changed"})))
        assert [a.ticket_id for a in moves] == ["tk-1", "tk-2"]

        window = storage.list_activities(ActivityQuery(since="2024-06-02T00:00:00+00:00", until="2024-06-04T00:00:00+00:00"))
        assert [a.action for a in window] == ["status_changed", "status_changed"]

        newest = storage.list_activities(ActivityQuery(ticket_ids=("tk-2",), newest_first=True, limit=1))
        assert [a.action for a in newest] == ["commented"]

    def test_activity_ties_keep_insertion_order(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-1")
        for action in ("created", "updated", "assigned"):
            storage.create_activity({"ticket_id": "tk-1", "actor": "x", "action": action, "changes": {}, "created_at": TS})
        assert [a.action for a in storage.list_activities(ActivityQuery(ticket_id="tk-1"))] == ["created", "updated", "assigned"]
        newest = storage.list_activities(ActivityQuery(ticket_id="tk-1", newest_first=True))
        assert [a.action for a in newest] == ["assigned", "updated", "created"]

    def test_snapshot_upsert(self, storage: StorageAdapter) -> None:
        _board(storage)
        storage.upsert_snapshot("bd-1", "todo", "2024-06-01", 3)
        storage.upsert_snapshot("bd-1", "todo", "2024-06-01", 5)
        storage.upsert_snapshot("bd-1", "done", "2024-06-02", 1)
        rows = storage.list_snapshots("bd-1", "2024-06-01", "2024-06-01")
        assert [(r.status, r.count) for r in rows] == [("todo", 5)]


class TestIntegrity:
    def test_duplicate_id_is_storage_error(self, storage: StorageAdapter) -> None:
        _board(storage)
        with pytest.raises(StorageError):
            _board(storage)

    def test_ticket_on_missing_board_is_storage_error(self, storage: StorageAdapter) -> None:
        with pytest.raises(StorageError):
            _ticket(storage, "tk-1", board_id="bd-missing")

    def test_activity_on_missing_ticket_is_storage_error(self, storage: StorageAdapter) -> None:
        with pytest.raises(StorageError):
            storage.create_activity({"ticket_id": "tk-missing", "actor": "x", "action": "created", "changes": {}})

    def test_delete_ticket_cascades(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-parent")
        _ticket(storage, "tk-child", parent_id="tk-parent")
        storage.create_comment({"ticket_id": "tk-parent", "author": "x", "content": "c"})
        storage.create_attachment({"ticket_id": "tk-parent", "filename": "f"})
        storage.create_activity({"ticket_id": "tk-parent", "actor": "x", "action": "created", "changes": {}})

        assert storage.delete_ticket("tk-parent") is True

        assert storage.list_comments("tk-parent") == []
        assert storage.list_attachments("tk-parent") == []
        assert storage.list_activities(ActivityQuery(ticket_id="tk-parent")) == []
        child = storage.get_ticket("tk-child")
        assert child is not None
        assert child.parent_id is None

    def test_returned_records_are_detached(self, storage: StorageAdapter) -> None:
        _board(storage)
        _ticket(storage, "tk-1", custom_fields={"k": {"n": 1}})
        t = storage.get_ticket("tk-1")
        assert t is not None
        t.custom_fields["k"]["n"] = 99
        again = storage.get_ticket("tk-1")
        assert again is not None
        assert again.custom_fields == {"k": {"n": 1}}


class TestSQLiteSpecifics:
    def test_schema_version_stamped(self, tmp_path: Path) -> None:
        with SQLiteStorage(tmp_path / "t.db") as s:
            s.init()
            assert s.get_schema_version() == CURRENT_SCHEMA_VERSION

    def test_data_persists_across_connections(self, tmp_path: Path) -> None:
        with SQLiteStorage(tmp_path / "t.db") as s:
            s.init()
            _board(s)
        with SQLiteStorage(tmp_path / "t.db") as s:
            s.init()
            assert s.get_board("bd-1") is not None

    def test_pragmas(self, tmp_path: Path) -> None:
        with SQLiteStorage(tmp_path / "t.db") as s:
            assert s.conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
            assert s.conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
            assert s.conn.row_factory is sqlite3.Row

    def test_sqlite_error_is_wrapped(self, tmp_path: Path) -> None:
        with SQLiteStorage(tmp_path / "t.db") as s:
            s.init()
            _board(s)
            with pytest.raises(StorageError) as exc_info:
                _board(s)
            assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)

    def test_builtin_seeding_leaves_existing_rows(self, tmp_path: Path) -> None:
        with SQLiteStorage(tmp_path / "t.db") as s:
            s.init()
            s.init()
            assert len([wf for wf in s.list_workflows() if wf.is_builtin]) == 4
