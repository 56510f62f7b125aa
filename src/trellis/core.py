"""Ticket lifecycle engine.

Single entry point for boards, tickets, comments, attachments, workflows,
and flow analytics. Both the CLI and the HTTP API import from this module.
The engine depends only on the ``StorageAdapter`` protocol; the in-memory
and SQLite backends are interchangeable.

Convention-based discovery: each project has a `.trellis/` directory
containing `trellis.db` (SQLite) and `config.json` (name, storage backend,
default workflow).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, date
from pathlib import Path
from typing import Any, TypedDict

from trellis.engine_activity import ActivityMixin, compute_diff
from trellis.engine_base import Clock, to_iso, utc_now
from trellis.engine_cfd import CFDMixin
from trellis.errors import InvalidTransitionError, NotFoundError, StorageError, TrellisError, ValidationError
from trellis.events import EventBus, EventHandler
from trellis.models import (
    ActivityAction,
    Attachment,
    Board,
    Comment,
    Ticket,
    Workflow,
    normalise_string_set,
    validate_field_map,
    validate_priority,
)
from trellis.search import parse_query
from trellis.storage import BOARD_MUTABLE_FIELDS, TICKET_MUTABLE_FIELDS, StorageAdapter, TicketQuery
from trellis.types.api import BatchFailure, KanbanView
from trellis.types.core import FieldChange
from trellis.validation import require_actor, require_text, validate_due_date, validate_position
from trellis.workflows import WorkflowRegistry
from trellis.workflows_data import DEFAULT_WORKFLOW_ID

logger = logging.getLogger(__name__)


class ProjectConfig(TypedDict, total=False):
    """Shape of .trellis/config.json."""

    name: str
    version: int
    storage: str
    default_workflow: str


# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

TRELLIS_DIR_NAME = ".trellis"
DB_FILENAME = "trellis.db"
CONFIG_FILENAME = "config.json"

VALID_STORAGE_BACKENDS: frozenset[str] = frozenset({"sqlite", "memory"})


def find_trellis_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for .trellis/ directory.

    Returns the .trellis/ directory path (not the project root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / TRELLIS_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"No {TRELLIS_DIR_NAME}/ directory found in {current} or any parent"
    raise FileNotFoundError(msg)


def read_config(trellis_dir: Path) -> ProjectConfig:
    """Read .trellis/config.json. Returns defaults if missing or corrupt."""
    defaults = ProjectConfig(name=trellis_dir.resolve().parent.name, version=1, storage="sqlite", default_workflow=DEFAULT_WORKFLOW_ID)
    config_path = trellis_dir / CONFIG_FILENAME
    if not config_path.exists():
        return defaults
    try:
        loaded = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return defaults
    if not isinstance(loaded, dict):
        logger.warning("Ignoring %s: expected a JSON object", config_path)
        return defaults
    result: ProjectConfig = {**defaults, **loaded}  # type: ignore[typeddict-item]
    return result


def write_config(trellis_dir: Path, config: dict[str, Any] | ProjectConfig) -> None:
    """Write .trellis/config.json."""
    config_path = trellis_dir / CONFIG_FILENAME
    config_path.write_text(json.dumps(config, indent=2) + "\n")


def _validate_string_list(value: object, name: str) -> None:
    """Raise ValidationError if *value* is not a list of strings."""
    if not isinstance(value, list) or not all(isinstance(i, str) for i in value):
        msg = f"{name} must be a list of strings"
        raise ValidationError(msg)


# ---------------------------------------------------------------------------
# TicketEngine -- the core
# ---------------------------------------------------------------------------


class TicketEngine(ActivityMixin, CFDMixin):
    """Orchestrates the ticket lifecycle over an injected storage adapter.

    Every public method is synchronous; the host supplies concurrency.

    Audit guarantee is best-effort, not atomic: persisting a ticket,
    appending its activity, and publishing its event are separate storage
    calls. A failure between them can leave a ticket without its activity,
    or an activity whose event never fired. Concurrent writers are not
    locked against each other; the last write to complete wins.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        *,
        clock: Clock | None = None,
        default_workflow: str = DEFAULT_WORKFLOW_ID,
    ) -> None:
        self.storage = storage
        self.workflows = WorkflowRegistry(storage)
        self.events = EventBus()
        self._clock: Clock = clock or utc_now
        self.default_workflow = default_workflow

    @classmethod
    def from_project(cls, project_path: Path | None = None) -> TicketEngine:
        """Create a TicketEngine by discovering .trellis/ from project_path (or cwd)."""
        from trellis.storage_memory import MemoryStorage
        from trellis.storage_sqlite import SQLiteStorage

        trellis_dir = find_trellis_root(project_path)
        config = read_config(trellis_dir)
        backend = config.get("storage", "sqlite")
        if backend not in VALID_STORAGE_BACKENDS:
            logger.warning("Unknown storage '%s' in config, falling back to 'sqlite'", backend)
            backend = "sqlite"
        storage: StorageAdapter = MemoryStorage() if backend == "memory" else SQLiteStorage(trellis_dir / DB_FILENAME)
        engine = cls(storage, default_workflow=config.get("default_workflow", DEFAULT_WORKFLOW_ID))
        engine.initialize()
        return engine

    def __enter__(self) -> TicketEngine:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def initialize(self) -> None:
        """Prepare the storage backend and seed built-in workflows (idempotent)."""
        self.storage.init()

    def close(self) -> None:
        self.events.clear()
        self.storage.close()

    def _now(self) -> str:
        return to_iso(self._clock())

    def _today(self) -> date:
        moment = self._clock()
        if moment.tzinfo is not None:
            moment = moment.astimezone(UTC)
        return moment.date()

    # -- Events --------------------------------------------------------------

    def subscribe(self, event: str, handler: EventHandler) -> None:
        self.events.subscribe(event, handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> bool:
        return self.events.unsubscribe(event, handler)

    # -- Workflows -----------------------------------------------------------

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self.workflows.get(workflow_id)

    def list_workflows(self) -> list[Workflow]:
        return self.workflows.list()

    def create_workflow(self, definition: Mapping[str, Any], *, replace: bool = False) -> Workflow:
        return self.workflows.create(definition, replace=replace)

    def get_board_workflow(self, board_id: str) -> Workflow:
        return self.workflows.get(self.get_board(board_id).workflow_id)

    # -- Boards --------------------------------------------------------------

    def create_board(
        self,
        name: str,
        *,
        workflow_id: str | None = None,
        description: str = "",
        metadata: dict[str, Any] | None = None,
        board_id: str | None = None,
    ) -> Board:
        name = require_text(name, "name")
        workflow = self.workflows.get(workflow_id or self.default_workflow)
        if not isinstance(description, str):
            msg = "description must be a string"
            raise ValidationError(msg)
        clean_metadata = validate_field_map(metadata, "metadata")
        if board_id is not None:
            board_id = require_text(board_id, "board_id")
            if self.storage.get_board(board_id) is not None:
                msg = f"Board '{board_id}' already exists"
                raise ValidationError(msg)

        now = self._now()
        board = self.storage.create_board(
            {
                "id": board_id,
                "name": name,
                "description": description,
                "workflow_id": workflow.id,
                "metadata": clean_metadata,
                "created_at": now,
                "updated_at": now,
            }
        )
        logger.debug("Created board %s (%s) with workflow %s", board.id, board.name, workflow.id)
        self.events.publish("board:created", {"board": board.to_dict()})
        return board

    def get_board(self, board_id: str) -> Board:
        board = self.storage.get_board(board_id)
        if board is None:
            raise NotFoundError("board", board_id)
        return board

    def list_boards(self) -> list[Board]:
        """All boards, newest first."""
        return self.storage.list_boards()

    def update_board(self, board_id: str, updates: Mapping[str, Any]) -> Board:
        board = self.get_board(board_id)
        if not isinstance(updates, Mapping):
            msg = "updates must be a mapping"
            raise ValidationError(msg)
        unknown = set(updates) - BOARD_MUTABLE_FIELDS
        if unknown:
            msg = f"Unknown board field(s): {', '.join(sorted(unknown))}. Valid: {', '.join(sorted(BOARD_MUTABLE_FIELDS))}"
            raise ValidationError(msg)

        values: dict[str, Any] = {}
        for key, value in updates.items():
            if key == "name":
                values[key] = require_text(value, "name")
            elif key == "description":
                if value is not None and not isinstance(value, str):
                    msg = "description must be a string"
                    raise ValidationError(msg)
                values[key] = value or ""
            elif key == "metadata":
                values[key] = validate_field_map(value, "metadata")
            elif key == "workflow_id":
                values[key] = self.workflows.get(require_text(value, "workflow_id")).id

        changes = compute_diff(board.to_dict(), {**board.to_dict(), **values}, values)
        if not changes:
            return board
        if "workflow_id" in changes:
            self._check_workflow_fits(board.id, self.workflows.get(values["workflow_id"]))

        persisted = {key: values[key] for key in changes}
        persisted["updated_at"] = self._now()
        updated = self.storage.update_board(board.id, persisted)
        if updated is None:
            raise NotFoundError("board", board_id)
        logger.debug("Updated board %s: %s", board.id, ", ".join(changes))
        self.events.publish("board:updated", {"board": updated.to_dict(), "changes": changes})
        return updated

    def _check_workflow_fits(self, board_id: str, workflow: Workflow) -> None:
        """Reject a workflow switch that would leave tickets in an undeclared state."""
        states = set(workflow.states)
        stranded = sorted({t.status for t in self.storage.list_tickets(TicketQuery(board_id=board_id))} - states)
        if stranded:
            msg = (
                f"Cannot switch board '{board_id}' to workflow '{workflow.id}': "
                f"tickets are in states it does not declare: {', '.join(stranded)}"
            )
            raise ValidationError(msg)

    def delete_board(self, board_id: str) -> None:
        """Delete a board, its tickets and everything they own, and its snapshots."""
        board = self.get_board(board_id)
        self.storage.delete_board(board_id)
        logger.debug("Deleted board %s", board_id)
        self.events.publish("board:deleted", {"board": board.to_dict()})

    # -- Ticket field normalisation -----------------------------------------

    def _normalise_ticket_fields(
        self,
        fields: Mapping[str, Any],
        *,
        board_id: str,
        ticket_id: str | None = None,
    ) -> dict[str, Any]:
        """Validate caller-supplied ticket fields. Status membership is checked by the caller."""
        unknown = set(fields) - TICKET_MUTABLE_FIELDS
        if unknown:
            msg = f"Unknown ticket field(s): {', '.join(sorted(unknown))}. Valid: {', '.join(sorted(TICKET_MUTABLE_FIELDS))}"
            raise ValidationError(msg)

        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "title":
                values[key] = require_text(value, "title")
            elif key == "description":
                if value is not None and not isinstance(value, str):
                    msg = "description must be a string"
                    raise ValidationError(msg)
                values[key] = value or ""
            elif key == "status":
                values[key] = require_text(value, "status")
            elif key == "priority":
                values[key] = validate_priority(value)
            elif key in ("labels", "assignees"):
                values[key] = normalise_string_set(value, key)
            elif key == "custom_fields":
                values[key] = validate_field_map(value, "custom_fields")
            elif key == "position":
                values[key] = validate_position(value)
            elif key == "due_date":
                values[key] = validate_due_date(value)
            elif key == "parent_id":
                values[key] = self._validate_parent(value, board_id=board_id, ticket_id=ticket_id)
        return values

    def _validate_parent(self, parent_id: Any, *, board_id: str, ticket_id: str | None) -> str | None:
        if parent_id is None or parent_id == "":
            return None
        if not isinstance(parent_id, str):
            msg = "parent_id must be a string or null"
            raise ValidationError(msg)
        if parent_id == ticket_id:
            msg = f"Ticket {ticket_id} cannot be its own parent"
            raise ValidationError(msg)
        parent = self.storage.get_ticket(parent_id)
        if parent is None:
            raise NotFoundError("parent ticket", parent_id)
        if parent.board_id != board_id:
            msg = f"Parent ticket {parent_id} is on board '{parent.board_id}', not '{board_id}'"
            raise ValidationError(msg)
        if ticket_id is not None:
            ancestor = parent.parent_id
            while ancestor is not None:
                if ancestor == ticket_id:
                    msg = f"Setting parent_id to '{parent_id}' would create a circular parent chain"
                    raise ValidationError(msg)
                row = self.storage.get_ticket(ancestor)
                ancestor = row.parent_id if row is not None else None
        return parent_id

    # -- Ticket CRUD ---------------------------------------------------------

    def create_ticket(self, board_id: str, title: str, *, actor: str = "system", **fields: Any) -> Ticket:
        """Create a ticket on a board.

        Without an explicit ``status`` the ticket starts in the workflow's
        initial state. No transition check applies to the initial status,
        but it must be a state the workflow declares.
        """
        board = self.get_board(board_id)
        workflow = self.workflows.get(board.workflow_id)
        actor = require_actor(actor)
        title = require_text(title, "title")
        status = fields.pop("status", None)
        values = self._normalise_ticket_fields(fields, board_id=board.id)
        status = workflow.initial_state if status is None else require_text(status, "status")
        if status not in workflow.states:
            msg = f"Invalid status '{status}' for workflow '{workflow.id}'. Valid states: {', '.join(workflow.states)}"
            raise ValidationError(msg)

        now = self._now()
        ticket = self.storage.create_ticket(
            {**values, "board_id": board.id, "title": title, "status": status, "created_at": now, "updated_at": now}
        )
        logger.debug("Created ticket %s on board %s in %s", ticket.id, board.id, status)
        snapshot = ticket.to_dict()
        self._record_activity(ticket.id, "created", {"ticket": FieldChange(old=None, new=snapshot)}, actor=actor)
        self.events.publish("ticket:created", {"ticket": snapshot, "actor": actor})
        return ticket

    def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.storage.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError("ticket", ticket_id)
        return ticket

    def list_tickets(self, query: TicketQuery | None = None, **filters: Any) -> list[Ticket]:
        """List tickets by a ``TicketQuery`` or by its fields as keywords (not both)."""
        if query is not None and filters:
            msg = "Pass either a TicketQuery or keyword filters, not both"
            raise ValidationError(msg)
        if filters:
            try:
                query = TicketQuery(**filters)
            except TypeError as exc:
                msg = f"Invalid ticket filter: {exc}"
                raise ValidationError(msg) from exc
        query = query or TicketQuery()
        if query.limit is not None and query.limit < 0:
            msg = f"limit must be non-negative, got {query.limit}"
            raise ValidationError(msg)
        if query.offset < 0:
            msg = f"offset must be non-negative, got {query.offset}"
            raise ValidationError(msg)
        if query.board_id is not None:
            self.get_board(query.board_id)
        return self.storage.list_tickets(query)

    def update_ticket(self, ticket_id: str, updates: Mapping[str, Any], *, actor: str = "system") -> Ticket:
        """Apply a partial update.

        Set- and map-valued fields are replaced, never merged. A status
        change is checked against the workflow graph only when it differs
        from the current status. Keys whose value did not actually change
        are dropped; if nothing changed, no write, activity, or event happens.
        """
        current = self.get_ticket(ticket_id)
        actor = require_actor(actor)
        if not isinstance(updates, Mapping):
            msg = "updates must be a mapping"
            raise ValidationError(msg)
        values = self._normalise_ticket_fields(updates, board_id=current.board_id, ticket_id=ticket_id)

        new_status = values.get("status")
        if new_status is not None and new_status != current.status:
            workflow = self.get_board_workflow(current.board_id)
            if not workflow.can_transition(current.status, new_status):
                allowed = workflow.allowed_targets(current.status)
                logger.warning(
                    "Rejected transition %s -> %s on %s (workflow %s)", current.status, new_status, ticket_id, workflow.id
                )
                raise InvalidTransitionError(current.status, new_status, allowed)

        before = current.to_dict()
        changes = compute_diff(before, {**before, **values}, values)
        if not changes:
            return current

        persisted = {key: values[key] for key in changes}
        persisted["updated_at"] = self._now()
        updated = self.storage.update_ticket(ticket_id, persisted)
        if updated is None:
            raise NotFoundError("ticket", ticket_id)
        logger.debug("Updated ticket %s: %s", ticket_id, ", ".join(changes))

        action: ActivityAction = "status_changed" if "status" in changes else "updated"
        self._record_activity(ticket_id, action, changes, actor=actor)
        self.events.publish("ticket:updated", {"ticket": updated.to_dict(), "changes": changes, "actor": actor})
        return updated

    def move_ticket(self, ticket_id: str, status: str, *, actor: str = "system") -> Ticket:
        return self.update_ticket(ticket_id, {"status": status}, actor=actor)

    def assign_ticket(self, ticket_id: str, assignees: list[str], *, actor: str = "system") -> Ticket:
        """Replace the whole assignee set and record a dedicated ``assigned`` activity."""
        before = self.get_ticket(ticket_id)
        actor = require_actor(actor)
        ticket = self.update_ticket(ticket_id, {"assignees": assignees}, actor=actor)
        self._record_activity(
            ticket_id,
            "assigned",
            {"assignees": FieldChange(old=before.assignees, new=ticket.assignees)},
            actor=actor,
        )
        return ticket

    def unassign_ticket(self, ticket_id: str, assignee: str, *, actor: str = "system") -> Ticket:
        """Remove one assignee. A name that is not assigned leaves the ticket untouched."""
        current = self.get_ticket(ticket_id)
        assignee = require_text(assignee, "assignee")
        if assignee not in current.assignees:
            return current
        return self.assign_ticket(ticket_id, [a for a in current.assignees if a != assignee], actor=actor)

    def delete_ticket(self, ticket_id: str, *, actor: str = "system") -> None:
        """Delete a ticket with its comments, activities and attachments. Subtasks are detached."""
        ticket = self.get_ticket(ticket_id)
        actor = require_actor(actor)
        self.storage.delete_ticket(ticket_id)
        logger.debug("Deleted ticket %s", ticket_id)
        self.events.publish("ticket:deleted", {"ticket": ticket.to_dict(), "actor": actor})

    def create_subtask(self, parent_ticket_id: str, title: str, *, actor: str = "system", **fields: Any) -> Ticket:
        """Create a ticket on the parent's board with ``parent_id`` set to the parent."""
        parent = self.get_ticket(parent_ticket_id)
        for key in ("parent_id", "board_id"):
            if key in fields:
                msg = f"{key} is set by create_subtask and cannot be supplied"
                raise ValidationError(msg)
        return self.create_ticket(parent.board_id, title, actor=actor, parent_id=parent.id, **fields)

    def get_subtasks(self, parent_id: str) -> list[Ticket]:
        self.get_ticket(parent_id)
        return self.storage.list_tickets(TicketQuery(parent_id=parent_id))

    def get_valid_transitions(self, ticket_id: str) -> list[str]:
        ticket = self.get_ticket(ticket_id)
        return list(self.get_board_workflow(ticket.board_id).allowed_targets(ticket.status))

    def bulk_update_tickets(
        self,
        ids: list[str],
        updates: Mapping[str, Any],
        *,
        actor: str = "system",
    ) -> tuple[list[Ticket], list[BatchFailure]]:
        """Apply the same update to each ticket, in order. Returns (updated, failures).

        A per-item engine error is collected and processing continues. A
        ``StorageError`` aborts the batch; tickets already processed stay updated.
        """
        _validate_string_list(ids, "ids")
        results: list[Ticket] = []
        errors: list[BatchFailure] = []
        for ticket_id in ids:
            try:
                results.append(self.update_ticket(ticket_id, updates, actor=actor))
            except StorageError:
                raise
            except InvalidTransitionError as e:
                errors.append(BatchFailure(id=ticket_id, error=str(e), code=e.code, allowed=list(e.allowed)))
            except TrellisError as e:
                errors.append(BatchFailure(id=ticket_id, error=str(e), code=e.code))
        logger.debug("Bulk update: %d updated, %d failed", len(results), len(errors))
        return results, errors

    # -- Views ---------------------------------------------------------------

    def get_kanban_view(self, board_id: str) -> KanbanView:
        """Tickets grouped into one column per workflow state, in workflow order."""
        board = self.get_board(board_id)
        workflow = self.workflows.get(board.workflow_id)
        columns: dict[str, list[Any]] = {state: [] for state in workflow.states}
        for ticket in self.storage.list_tickets(TicketQuery(board_id=board.id)):
            columns.setdefault(ticket.status, []).append(ticket.to_dict())
        return KanbanView(board=board.to_dict(), workflow=workflow.to_dict(), columns=columns)

    def get_backlog(self, board_id: str) -> list[Ticket]:
        """Tickets still in the workflow's initial state."""
        workflow = self.get_board_workflow(board_id)
        return self.storage.list_tickets(TicketQuery(board_id=board_id, status=workflow.initial_state))

    def search(self, board_id: str, query: str, *, limit: int | None = None, offset: int = 0) -> list[Ticket]:
        """Search a board with a ``key:value`` + free-text query string."""
        if not isinstance(query, str):
            msg = "query must be a string"
            raise ValidationError(msg)
        return self.list_tickets(parse_query(query, board_id=board_id, limit=limit, offset=offset))

    # -- Comments ------------------------------------------------------------

    def add_comment(self, ticket_id: str, content: str, author: str = "system") -> Comment:
        self.get_ticket(ticket_id)
        content = require_text(content, "content")
        author = require_actor(author)
        comment = self.storage.create_comment(
            {"ticket_id": ticket_id, "author": author, "content": content, "created_at": self._now()}
        )
        self._record_activity(ticket_id, "commented", {"comment_id": FieldChange(old=None, new=comment.id)}, actor=author)
        self.events.publish("comment:created", {"comment": comment.to_dict(), "ticket_id": ticket_id})
        return comment

    def reply_to_comment(self, ticket_id: str, parent_comment_id: str, content: str, author: str = "system") -> Comment:
        """Threaded reply. Unlike ``add_comment`` this appends no activity."""
        self.get_ticket(ticket_id)
        parent = self.storage.get_comment(parent_comment_id)
        if parent is None:
            raise NotFoundError("comment", parent_comment_id)
        if parent.ticket_id != ticket_id:
            msg = f"Comment {parent_comment_id} belongs to ticket {parent.ticket_id}, not {ticket_id}"
            raise ValidationError(msg)
        content = require_text(content, "content")
        author = require_actor(author)
        comment = self.storage.create_comment(
            {
                "ticket_id": ticket_id,
                "author": author,
                "content": content,
                "parent_id": parent.id,
                "created_at": self._now(),
            }
        )
        self.events.publish("comment:created", {"comment": comment.to_dict(), "ticket_id": ticket_id})
        return comment

    def list_comments(self, ticket_id: str) -> list[Comment]:
        self.get_ticket(ticket_id)
        return self.storage.list_comments(ticket_id)

    # -- Attachments ---------------------------------------------------------

    def add_attachment(
        self,
        ticket_id: str,
        *,
        filename: str,
        mime_type: str = "application/octet-stream",
        size_bytes: int = 0,
        storage_ref: str = "",
        uploaded_by: str = "system",
        original_filename: str | None = None,
    ) -> Attachment:
        """Record attachment metadata. The bytes themselves live wherever ``storage_ref`` points."""
        self.get_ticket(ticket_id)
        filename = require_text(filename, "filename")
        if isinstance(size_bytes, bool) or not isinstance(size_bytes, int) or size_bytes < 0:
            msg = f"size_bytes must be a non-negative integer, got {size_bytes!r}"
            raise ValidationError(msg)
        attachment = self.storage.create_attachment(
            {
                "ticket_id": ticket_id,
                "filename": filename,
                "original_filename": original_filename or filename,
                "mime_type": require_text(mime_type, "mime_type"),
                "size_bytes": size_bytes,
                "storage_ref": storage_ref,
                "uploaded_by": require_actor(uploaded_by),
                "created_at": self._now(),
            }
        )
        logger.debug("Attached %s to %s", attachment.id, ticket_id)
        return attachment

    def get_attachment(self, attachment_id: str) -> Attachment:
        attachment = self.storage.get_attachment(attachment_id)
        if attachment is None:
            raise NotFoundError("attachment", attachment_id)
        return attachment

    def list_attachments(self, ticket_id: str) -> list[Attachment]:
        self.get_ticket(ticket_id)
        return self.storage.list_attachments(ticket_id)

    def delete_attachment(self, attachment_id: str) -> None:
        self.get_attachment(attachment_id)
        self.storage.delete_attachment(attachment_id)
        logger.debug("Deleted attachment %s", attachment_id)
