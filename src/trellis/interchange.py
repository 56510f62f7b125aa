"""Export/import of a whole store as one versioned JSON document.

Boards and tickets are flat lists; tickets reference boards and parents by
id. Import preserves ids and timestamps and skips any id that already
exists, so importing the same document twice changes nothing the second
time. Imported tickets get no activity entries and fire no events.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from trellis.errors import NotFoundError, ValidationError
from trellis.models import validate_field_map
from trellis.types.api import ExportDocument, ImportResult
from trellis.validation import require_text

if TYPE_CHECKING:
    from trellis.core import TicketEngine

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"
_SUPPORTED_MAJOR = "1"

# Ticket keys carried over verbatim (after validation) besides id/board/title/status.
_TICKET_IMPORT_FIELDS = ("description", "priority", "labels", "assignees", "parent_id", "custom_fields", "position", "due_date")


def export_data(engine: TicketEngine) -> ExportDocument:
    """Snapshot every board, every ticket, and every user-defined workflow."""
    storage = engine.storage
    return ExportDocument(
        version=EXPORT_VERSION,
        exported_at=engine._now(),
        workflows=[wf.to_dict() for wf in engine.list_workflows() if not wf.is_builtin],
        boards=[b.to_dict() for b in storage.list_boards()],
        tickets=[t.to_dict() for t in storage.list_tickets()],
    )


def _check_version(document: Mapping[str, Any]) -> None:
    version = document.get("version")
    if not isinstance(version, str) or version.split(".", 1)[0] != _SUPPORTED_MAJOR:
        msg = f"Unsupported export version {version!r} (expected {_SUPPORTED_MAJOR}.x)"
        raise ValidationError(msg)


def _list_section(document: Mapping[str, Any], key: str) -> list[Mapping[str, Any]]:
    section = document.get(key, [])
    if not isinstance(section, list) or not all(isinstance(item, Mapping) for item in section):
        msg = f"'{key}' must be a list of objects"
        raise ValidationError(msg)
    return section


def _parents_first(tickets: list[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Order tickets so each parent precedes its subtasks.

    Parents that are not in the document are left to resolve against the
    existing store.
    """
    in_document = {t.get("id") for t in tickets}
    placed: set[Any] = set()
    ordered: list[Mapping[str, Any]] = []
    pending = list(tickets)
    while pending:
        remaining = []
        for ticket in pending:
            parent = ticket.get("parent_id")
            if parent is None or parent not in in_document or parent in placed:
                ordered.append(ticket)
                placed.add(ticket.get("id"))
            else:
                remaining.append(ticket)
        if len(remaining) == len(pending):
            ids = ", ".join(sorted(str(t.get("id")) for t in remaining))
            msg = f"Circular parent chain among imported tickets: {ids}"
            raise ValidationError(msg)
        pending = remaining
    return ordered


def import_data(engine: TicketEngine, document: Mapping[str, Any]) -> ImportResult:
    """Load an export document. Existing ids are skipped (idempotent)."""
    if not isinstance(document, Mapping):
        msg = "Import document must be a JSON object"
        raise ValidationError(msg)
    _check_version(document)
    workflows = _list_section(document, "workflows")
    boards = _list_section(document, "boards")
    tickets = _parents_first(_list_section(document, "tickets"))

    storage = engine.storage
    result = ImportResult(workflows_created=0, boards_created=0, boards_skipped=0, tickets_created=0, tickets_skipped=0)

    for definition in workflows:
        if storage.get_workflow(str(definition.get("id"))) is None:
            engine.create_workflow(definition)
            result["workflows_created"] += 1

    for raw in boards:
        board_id = require_text(raw.get("id"), "board id")
        if storage.get_board(board_id) is not None:
            result["boards_skipped"] += 1
            continue
        workflow = engine.get_workflow(require_text(raw.get("workflow_id"), "workflow_id"))
        now = engine._now()
        storage.create_board(
            {
                "id": board_id,
                "name": require_text(raw.get("name"), "name"),
                "description": raw.get("description") or "",
                "workflow_id": workflow.id,
                "metadata": validate_field_map(raw.get("metadata"), "metadata"),
                "created_at": raw.get("created_at") or now,
                "updated_at": raw.get("updated_at") or raw.get("created_at") or now,
            }
        )
        result["boards_created"] += 1

    for raw in tickets:
        ticket_id = require_text(raw.get("id"), "ticket id")
        if storage.get_ticket(ticket_id) is not None:
            result["tickets_skipped"] += 1
            continue
        board_id = require_text(raw.get("board_id"), "board_id")
        board = storage.get_board(board_id)
        if board is None:
            raise NotFoundError("board", board_id)
        workflow = engine.get_workflow(board.workflow_id)
        status = raw.get("status") or workflow.initial_state
        if status not in workflow.states:
            msg = f"Ticket {ticket_id}: status '{status}' is not a state of workflow '{workflow.id}'"
            raise ValidationError(msg)
        fields = {key: raw[key] for key in _TICKET_IMPORT_FIELDS if key in raw}
        values = engine._normalise_ticket_fields(fields, board_id=board.id)
        now = engine._now()
        storage.create_ticket(
            {
                **values,
                "id": ticket_id,
                "board_id": board.id,
                "title": require_text(raw.get("title"), "title"),
                "status": status,
                "created_at": raw.get("created_at") or now,
                "updated_at": raw.get("updated_at") or raw.get("created_at") or now,
            }
        )
        result["tickets_created"] += 1

    logger.info(
        "Imported %d workflow(s), %d board(s) (%d skipped), %d ticket(s) (%d skipped)",
        result["workflows_created"],
        result["boards_created"],
        result["boards_skipped"],
        result["tickets_created"],
        result["tickets_skipped"],
    )
    return result
