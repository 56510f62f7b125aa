"""Query-string parsing for ticket search."""

from __future__ import annotations

import pytest

from trellis.search import parse_query, split_query
from trellis.storage import ANY_PARENT


class TestSplitQuery:
    def test_structured_and_free_text(self) -> None:
        filters, text = split_query("status:todo login priority:high bug")
        assert filters == {"status": "todo", "priority": "high"}
        assert text == "login bug"

    def test_last_occurrence_wins(self) -> None:
        filters, _ = split_query("label:a label:b")
        assert filters == {"label": "b"}

    @pytest.mark.parametrize("token", ["owner:alice", "status:", ":todo", "http://example.com"])
    def test_unrecognised_tokens_are_free_text(self, token: str) -> None:
        filters, text = split_query(token)
        assert filters == {}
        assert text == token

    def test_value_may_contain_colon(self) -> None:
        filters, _ = split_query("label:area:auth")
        assert filters == {"label": "area:auth"}

    def test_whitespace_collapsed(self) -> None:
        assert split_query("  fix   login  ") == ({}, "fix login")


class TestParseQuery:
    def test_builds_ticket_query(self) -> None:
        q = parse_query("assignee:alice label:bug crash", board_id="bd-1", limit=10, offset=5)
        assert q.board_id == "bd-1"
        assert q.assignee == "alice"
        assert q.label == "bug"
        assert q.search == "crash"
        assert q.status is None
        assert q.limit == 10
        assert q.offset == 5
        assert q.parent_id is ANY_PARENT

    def test_empty_text_means_no_search(self) -> None:
        assert parse_query("status:done").search is None
