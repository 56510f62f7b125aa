"""Storage capability contract shared by every backend.

The engine depends only on ``StorageAdapter``; concrete backends
(``storage_memory.MemoryStorage``, ``storage_sqlite.SQLiteStorage``) must
satisfy identical semantics:

* ``get_*`` returns ``None`` for a missing id, never raises.
* ``create_*`` generates an id when the record does not carry one.
* ``update_*`` merges only the supplied keys and returns the fresh record
  (``None`` if the id is missing).
* Structured fields (labels, assignees, custom fields, metadata, activity
  changes, transition tables) round-trip unchanged; callers never see an
  encoded form.
* Deleting a board deletes its tickets; deleting a ticket deletes its
  comments, activities, and attachments and clears ``parent_id`` on its
  subtasks.
* Backend failures surface as ``StorageError``.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from trellis.models import (
    Activity,
    Attachment,
    Board,
    Comment,
    Snapshot,
    Ticket,
    Workflow,
)

# Keys a caller may pass to update_ticket / update_board.
TICKET_MUTABLE_FIELDS: frozenset[str] = frozenset(
    {"title", "description", "status", "priority", "labels", "assignees", "parent_id", "custom_fields", "position", "due_date"}
)
BOARD_MUTABLE_FIELDS: frozenset[str] = frozenset({"name", "description", "workflow_id", "metadata"})

# Sentinel distinguishing "no parent filter" from "parent_id IS NULL".
ANY_PARENT: Any = object()

_ID_PREFIXES = {"board": "bd", "ticket": "tk", "comment": "cm", "activity": "ac", "attachment": "at"}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id(kind: str) -> str:
    """Generate an id like ``tk-3f9a0c1b2e``."""
    return f"{_ID_PREFIXES[kind]}-{uuid.uuid4().hex[:10]}"


def encode_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=False)


def decode_json(raw: str | None, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


@dataclass(frozen=True)
class TicketQuery:
    """Structured ticket filter. ``None`` means "don't filter on this key".

    ``parent_id`` defaults to ``ANY_PARENT``; pass ``None`` to select
    top-level tickets only. ``search`` is a case-insensitive substring
    match over title and description. Results are ordered by position
    ascending, then creation time descending.
    """

    board_id: str | None = None
    status: str | None = None
    priority: str | None = None
    assignee: str | None = None
    label: str | None = None
    parent_id: Any = ANY_PARENT
    search: str | None = None
    limit: int | None = None
    offset: int = 0

    def matches(self, ticket: Ticket) -> bool:
        """In-process predicate matching the SQL semantics of the SQLite backend."""
        if self.board_id is not None and ticket.board_id != self.board_id:
            return False
        if self.status is not None and ticket.status != self.status:
            return False
        if self.priority is not None and ticket.priority != self.priority:
            return False
        if self.assignee is not None and self.assignee not in ticket.assignees:
            return False
        if self.label is not None and self.label not in ticket.labels:
            return False
        if self.parent_id is not ANY_PARENT and ticket.parent_id != self.parent_id:
            return False
        if self.search:
            needle = self.search.lower()
            if needle not in ticket.title.lower() and needle not in (ticket.description or "").lower():
                return False
        return True


@dataclass(frozen=True)
class ActivityQuery:
    """Activity filter. ``since`` is inclusive, ``until`` exclusive (ISO timestamps).

    Results are chronological (oldest first) unless ``newest_first`` is set;
    ties on ``created_at`` keep insertion order.
    """

    ticket_id: str | None = None
    ticket_ids: tuple[str, ...] | None = None
    actions: frozenset[str] | None = None
    since: str | None = None
    until: str | None = None
    limit: int | None = None
    newest_first: bool = False

    def matches(self, activity: Activity) -> bool:
        if self.ticket_id is not None and activity.ticket_id != self.ticket_id:
            return False
        if self.ticket_ids is not None and activity.ticket_id not in self.ticket_ids:
            return False
        if self.actions is not None and activity.action not in self.actions:
            return False
        if self.since is not None and activity.created_at < self.since:
            return False
        return not (self.until is not None and activity.created_at >= self.until)


class StorageAdapter(Protocol):
    """Capability interface consumed by ``TicketEngine``."""

    def init(self) -> None: ...

    def close(self) -> None: ...

    # -- Workflows -----------------------------------------------------------

    def get_workflow(self, workflow_id: str) -> Workflow | None: ...

    def list_workflows(self) -> list[Workflow]: ...

    def save_workflow(self, workflow: Workflow) -> Workflow: ...

    # -- Boards --------------------------------------------------------------

    def create_board(self, data: Mapping[str, Any]) -> Board: ...

    def get_board(self, board_id: str) -> Board | None: ...

    def list_boards(self) -> list[Board]: ...

    def update_board(self, board_id: str, updates: Mapping[str, Any]) -> Board | None: ...

    def delete_board(self, board_id: str) -> bool: ...

    # -- Tickets -------------------------------------------------------------

    def create_ticket(self, data: Mapping[str, Any]) -> Ticket: ...

    def get_ticket(self, ticket_id: str) -> Ticket | None: ...

    def list_tickets(self, query: TicketQuery | None = None) -> list[Ticket]: ...

    def update_ticket(self, ticket_id: str, updates: Mapping[str, Any]) -> Ticket | None: ...

    def delete_ticket(self, ticket_id: str) -> bool: ...

    # -- Comments ------------------------------------------------------------

    def create_comment(self, data: Mapping[str, Any]) -> Comment: ...

    def get_comment(self, comment_id: str) -> Comment | None: ...

    def list_comments(self, ticket_id: str) -> list[Comment]: ...

    def delete_comment(self, comment_id: str) -> bool: ...

    # -- Activities ----------------------------------------------------------

    def create_activity(self, data: Mapping[str, Any]) -> Activity: ...

    def list_activities(self, query: ActivityQuery) -> list[Activity]: ...

    # -- Attachments ---------------------------------------------------------

    def create_attachment(self, data: Mapping[str, Any]) -> Attachment: ...

    def get_attachment(self, attachment_id: str) -> Attachment | None: ...

    def list_attachments(self, ticket_id: str) -> list[Attachment]: ...

    def delete_attachment(self, attachment_id: str) -> bool: ...

    # -- CFD snapshots -------------------------------------------------------

    def upsert_snapshot(self, board_id: str, status: str, date: str, count: int) -> Snapshot: ...

    def list_snapshots(self, board_id: str, start: str, end: str) -> list[Snapshot]: ...
