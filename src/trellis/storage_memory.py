"""In-memory storage adapter.

Reference implementation of ``StorageAdapter``. Records are deep-copied on
the way in and on the way out so callers can never mutate stored state
without going through an update call.
"""

from __future__ import annotations

import copy
import itertools
import logging
from collections.abc import Mapping
from typing import Any

from trellis.errors import StorageError
from trellis.models import (
    DEFAULT_PRIORITY,
    Activity,
    Attachment,
    Board,
    Comment,
    Snapshot,
    Ticket,
    Workflow,
)
from trellis.storage import (
    BOARD_MUTABLE_FIELDS,
    TICKET_MUTABLE_FIELDS,
    ActivityQuery,
    TicketQuery,
    _now_iso,
    new_id,
)

logger = logging.getLogger(__name__)


class MemoryStorage:
    """Dict-backed adapter. Nothing survives ``close()``."""

    def __init__(self) -> None:
        self._workflows: dict[str, Workflow] = {}
        self._boards: dict[str, Board] = {}
        self._tickets: dict[str, Ticket] = {}
        self._comments: dict[str, Comment] = {}
        self._activities: list[Activity] = []
        self._attachments: dict[str, Attachment] = {}
        self._snapshots: dict[tuple[str, str, str], int] = {}
        # Insertion sequence, used as the tie-breaker SQLite gets from rowid.
        self._seq = itertools.count()
        self._order: dict[str, int] = {}

    def init(self) -> None:
        from trellis.workflows import builtin_workflows

        for wf in builtin_workflows():
            if wf.id not in self._workflows:
                self._workflows[wf.id] = wf
                logger.debug("Seeded workflow: %s", wf.id)

    def close(self) -> None:
        for store in (self._workflows, self._boards, self._tickets, self._comments, self._attachments, self._order):
            store.clear()
        self._snapshots.clear()
        self._activities.clear()

    def _stamp(self, record_id: str) -> None:
        self._order[record_id] = next(self._seq)

    @staticmethod
    def _require_new(store: Mapping[str, Any], record_id: str, kind: str) -> None:
        if record_id in store:
            msg = f"UNIQUE constraint failed: {kind} id {record_id!r} already exists"
            raise StorageError(msg)

    def _require_ticket(self, ticket_id: str) -> None:
        if ticket_id not in self._tickets:
            msg = f"FOREIGN KEY constraint failed: ticket {ticket_id!r} does not exist"
            raise StorageError(msg)

    # -- Workflows -----------------------------------------------------------

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        return self._workflows.get(workflow_id)

    def list_workflows(self) -> list[Workflow]:
        return sorted(self._workflows.values(), key=lambda wf: (not wf.is_builtin, wf.id))

    def save_workflow(self, workflow: Workflow) -> Workflow:
        self._workflows[workflow.id] = workflow
        return workflow

    # -- Boards --------------------------------------------------------------

    def create_board(self, data: Mapping[str, Any]) -> Board:
        now = _now_iso()
        board = Board(
            id=data.get("id") or new_id("board"),
            name=data["name"],
            workflow_id=data["workflow_id"],
            description=data.get("description") or "",
            metadata=copy.deepcopy(dict(data.get("metadata") or {})),
            created_at=data.get("created_at") or now,
            updated_at=data.get("updated_at") or data.get("created_at") or now,
        )
        self._require_new(self._boards, board.id, "board")
        self._boards[board.id] = board
        self._stamp(board.id)
        return copy.deepcopy(board)

    def get_board(self, board_id: str) -> Board | None:
        board = self._boards.get(board_id)
        return copy.deepcopy(board) if board is not None else None

    def list_boards(self) -> list[Board]:
        boards = sorted(self._boards.values(), key=lambda b: self._order[b.id], reverse=True)
        boards.sort(key=lambda b: b.created_at, reverse=True)
        return copy.deepcopy(boards)

    def update_board(self, board_id: str, updates: Mapping[str, Any]) -> Board | None:
        board = self._boards.get(board_id)
        if board is None:
            return None
        changed = False
        for key, value in updates.items():
            if key in BOARD_MUTABLE_FIELDS:
                setattr(board, key, copy.deepcopy(value))
                changed = True
        if changed:
            board.updated_at = updates.get("updated_at") or _now_iso()
        return copy.deepcopy(board)

    def delete_board(self, board_id: str) -> bool:
        if board_id not in self._boards:
            return False
        for ticket_id in [t.id for t in self._tickets.values() if t.board_id == board_id]:
            self.delete_ticket(ticket_id)
        for key in [k for k in self._snapshots if k[0] == board_id]:
            del self._snapshots[key]
        del self._boards[board_id]
        return True

    # -- Tickets -------------------------------------------------------------

    def create_ticket(self, data: Mapping[str, Any]) -> Ticket:
        now = _now_iso()
        ticket = Ticket(
            id=data.get("id") or new_id("ticket"),
            board_id=data["board_id"],
            title=data["title"],
            status=data["status"],
            description=data.get("description") or "",
            priority=data.get("priority") or DEFAULT_PRIORITY,
            labels=list(data.get("labels") or []),
            assignees=list(data.get("assignees") or []),
            parent_id=data.get("parent_id"),
            custom_fields=copy.deepcopy(dict(data.get("custom_fields") or {})),
            position=data.get("position") or 0,
            due_date=data.get("due_date"),
            created_at=data.get("created_at") or now,
            updated_at=data.get("updated_at") or data.get("created_at") or now,
        )
        self._require_new(self._tickets, ticket.id, "ticket")
        if ticket.board_id not in self._boards:
            msg = f"FOREIGN KEY constraint failed: board {ticket.board_id!r} does not exist"
            raise StorageError(msg)
        if ticket.parent_id is not None:
            self._require_ticket(ticket.parent_id)
        self._tickets[ticket.id] = ticket
        self._stamp(ticket.id)
        return copy.deepcopy(ticket)

    def get_ticket(self, ticket_id: str) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return copy.deepcopy(ticket) if ticket is not None else None

    def list_tickets(self, query: TicketQuery | None = None) -> list[Ticket]:
        query = query or TicketQuery()
        matched = [t for t in self._tickets.values() if query.matches(t)]
        # position ASC, created_at DESC, insertion DESC -- applied as stable sorts, last key first.
        matched.sort(key=lambda t: self._order[t.id], reverse=True)
        matched.sort(key=lambda t: t.created_at, reverse=True)
        matched.sort(key=lambda t: t.position)
        end = None if query.limit is None else query.offset + query.limit
        return copy.deepcopy(matched[query.offset : end])

    def update_ticket(self, ticket_id: str, updates: Mapping[str, Any]) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            return None
        changed = False
        for key, value in updates.items():
            if key in TICKET_MUTABLE_FIELDS:
                setattr(ticket, key, copy.deepcopy(value))
                changed = True
        if changed:
            ticket.updated_at = updates.get("updated_at") or _now_iso()
        return copy.deepcopy(ticket)

    def delete_ticket(self, ticket_id: str) -> bool:
        if ticket_id not in self._tickets:
            return False
        del self._tickets[ticket_id]
        for key in [k for k, c in self._comments.items() if c.ticket_id == ticket_id]:
            del self._comments[key]
        for key in [k for k, a in self._attachments.items() if a.ticket_id == ticket_id]:
            del self._attachments[key]
        self._activities = [a for a in self._activities if a.ticket_id != ticket_id]
        for child in self._tickets.values():
            if child.parent_id == ticket_id:
                child.parent_id = None
        return True

    # -- Comments ------------------------------------------------------------

    def create_comment(self, data: Mapping[str, Any]) -> Comment:
        comment = Comment(
            id=data.get("id") or new_id("comment"),
            ticket_id=data["ticket_id"],
            author=data["author"],
            content=data["content"],
            parent_id=data.get("parent_id"),
            created_at=data.get("created_at") or _now_iso(),
        )
        self._require_new(self._comments, comment.id, "comment")
        self._require_ticket(comment.ticket_id)
        self._comments[comment.id] = comment
        self._stamp(comment.id)
        return copy.deepcopy(comment)

    def get_comment(self, comment_id: str) -> Comment | None:
        comment = self._comments.get(comment_id)
        return copy.deepcopy(comment) if comment is not None else None

    def list_comments(self, ticket_id: str) -> list[Comment]:
        comments = [c for c in self._comments.values() if c.ticket_id == ticket_id]
        comments.sort(key=lambda c: (c.created_at, self._order[c.id]))
        return copy.deepcopy(comments)

    def delete_comment(self, comment_id: str) -> bool:
        if self._comments.pop(comment_id, None) is None:
            return False
        for reply in self._comments.values():
            if reply.parent_id == comment_id:
                reply.parent_id = None
        return True

    # -- Activities ----------------------------------------------------------

    def create_activity(self, data: Mapping[str, Any]) -> Activity:
        activity = Activity(
            id=data.get("id") or new_id("activity"),
            ticket_id=data["ticket_id"],
            actor=data["actor"],
            action=data["action"],
            changes=copy.deepcopy(dict(data.get("changes") or {})),
            created_at=data.get("created_at") or _now_iso(),
        )
        self._require_ticket(activity.ticket_id)
        self._activities.append(activity)
        self._stamp(activity.id)
        return copy.deepcopy(activity)

    def list_activities(self, query: ActivityQuery) -> list[Activity]:
        matched = [a for a in self._activities if query.matches(a)]
        matched.sort(key=lambda a: (a.created_at, self._order[a.id]), reverse=query.newest_first)
        if query.limit is not None:
            matched = matched[: query.limit]
        return copy.deepcopy(matched)

    # -- Attachments ---------------------------------------------------------

    def create_attachment(self, data: Mapping[str, Any]) -> Attachment:
        attachment = Attachment(
            id=data.get("id") or new_id("attachment"),
            ticket_id=data["ticket_id"],
            filename=data["filename"],
            original_filename=data.get("original_filename") or data["filename"],
            mime_type=data.get("mime_type") or "application/octet-stream",
            size_bytes=int(data.get("size_bytes") or 0),
            storage_ref=data.get("storage_ref") or "",
            uploaded_by=data.get("uploaded_by") or "",
            created_at=data.get("created_at") or _now_iso(),
        )
        self._require_new(self._attachments, attachment.id, "attachment")
        self._require_ticket(attachment.ticket_id)
        self._attachments[attachment.id] = attachment
        self._stamp(attachment.id)
        return copy.deepcopy(attachment)

    def get_attachment(self, attachment_id: str) -> Attachment | None:
        attachment = self._attachments.get(attachment_id)
        return copy.deepcopy(attachment) if attachment is not None else None

    def list_attachments(self, ticket_id: str) -> list[Attachment]:
        attachments = [a for a in self._attachments.values() if a.ticket_id == ticket_id]
        attachments.sort(key=lambda a: (a.created_at, self._order[a.id]))
        return copy.deepcopy(attachments)

    def delete_attachment(self, attachment_id: str) -> bool:
        return self._attachments.pop(attachment_id, None) is not None

    # -- CFD snapshots -------------------------------------------------------

    def upsert_snapshot(self, board_id: str, status: str, date: str, count: int) -> Snapshot:
        self._snapshots[(board_id, status, date)] = count
        return Snapshot(board_id=board_id, status=status, date=date, count=count)

    def list_snapshots(self, board_id: str, start: str, end: str) -> list[Snapshot]:
        rows = [
            Snapshot(board_id=b, status=s, date=d, count=n)
            for (b, s, d), n in self._snapshots.items()
            if b == board_id and start <= d <= end
        ]
        rows.sort(key=lambda r: (r.date, r.status))
        return rows
