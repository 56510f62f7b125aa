"""Domain dataclasses for boards, tickets, and their satellites.

Entities are plain mutable dataclasses (the storage adapters build and copy
them); ``Workflow`` is frozen because it is configuration data shared by
every ticket on every board bound to it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal, cast

from trellis.errors import ValidationError
from trellis.types.core import (
    ActivityDict,
    AttachmentDict,
    BoardDict,
    CommentDict,
    FieldChange,
    ISOTimestamp,
    SnapshotDict,
    TicketDict,
    WorkflowDict,
)

# ---------------------------------------------------------------------------
# Constrained-string Literal types
# ---------------------------------------------------------------------------

Priority = Literal["urgent", "high", "medium", "low"]
ActivityAction = Literal["created", "updated", "status_changed", "assigned", "commented"]

# Highest first. Rank is the index: urgent=0 ... low=3.
PRIORITIES: tuple[Priority, ...] = ("urgent", "high", "medium", "low")
PRIORITY_RANK: dict[str, int] = {p: i for i, p in enumerate(PRIORITIES)}
DEFAULT_PRIORITY: Priority = "medium"

ACTIVITY_ACTIONS: frozenset[str] = frozenset({"created", "updated", "status_changed", "assigned", "commented"})

_MAX_FIELD_DEPTH = 8


# ---------------------------------------------------------------------------
# Value validation
# ---------------------------------------------------------------------------


def validate_priority(value: object) -> Priority:
    if not isinstance(value, str) or value not in PRIORITY_RANK:
        msg = f"Priority must be one of {', '.join(PRIORITIES)}, got {value!r}"
        raise ValidationError(msg)
    return cast(Priority, value)


def _check_field_value(value: object, path: str, depth: int) -> None:
    if depth > _MAX_FIELD_DEPTH:
        msg = f"{path}: nesting deeper than {_MAX_FIELD_DEPTH} levels"
        raise ValidationError(msg)
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            msg = f"{path}: numbers must be finite, got {value!r}"
            raise ValidationError(msg)
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check_field_value(item, f"{path}[{i}]", depth + 1)
        return
    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str) or not k.strip():
                msg = f"{path}: keys must be non-empty strings"
                raise ValidationError(msg)
            _check_field_value(v, f"{path}.{k}", depth + 1)
        return
    msg = f"{path}: unsupported value type {type(value).__name__}"
    raise ValidationError(msg)


def validate_field_map(value: object, name: str = "custom_fields") -> dict[str, Any]:
    """Validate a free-form key/value map and return a JSON-safe copy.

    Permitted value kinds: str, int, finite float, bool, None, lists of
    those, and nested maps of those. Tuples are normalised to lists.
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        msg = f"{name} must be a mapping, got {type(value).__name__}"
        raise ValidationError(msg)
    _check_field_value(value, name, 0)
    return _normalise(value)


def _normalise(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _normalise(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalise(v) for v in value]
    return value


def normalise_string_set(value: object, name: str) -> list[str]:
    """Return an ordered, de-duplicated list of non-empty, stripped strings."""
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        msg = f"{name} must be a list of strings"
        raise ValidationError(msg)
    result: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            msg = f"{name} must contain only non-empty strings"
            raise ValidationError(msg)
        cleaned = item.strip()
        if cleaned not in result:
            result.append(cleaned)
    return result


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Workflow:
    """A named directed graph of states.

    ``transitions`` maps every state to the states directly reachable from it.
    A state with no outgoing targets is terminal.
    """

    id: str
    name: str
    states: tuple[str, ...]
    initial_state: str
    transitions: dict[str, tuple[str, ...]]
    is_builtin: bool = False

    def allowed_targets(self, state: str) -> tuple[str, ...]:
        return self.transitions.get(state, ())

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return to_state in self.transitions.get(from_state, ())

    def is_terminal(self, state: str) -> bool:
        return not self.transitions.get(state)

    def to_dict(self) -> WorkflowDict:
        return {
            "id": self.id,
            "name": self.name,
            "states": list(self.states),
            "initial_state": self.initial_state,
            "transitions": {s: list(t) for s, t in self.transitions.items()},
            "is_builtin": self.is_builtin,
        }


@dataclass
class Board:
    id: str
    name: str
    workflow_id: str
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> BoardDict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "workflow_id": self.workflow_id,
            "metadata": self.metadata,
            "created_at": ISOTimestamp(self.created_at),
            "updated_at": ISOTimestamp(self.updated_at),
        }


@dataclass
class Ticket:
    id: str
    board_id: str
    title: str
    status: str
    description: str = ""
    priority: Priority = DEFAULT_PRIORITY
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    parent_id: str | None = None
    custom_fields: dict[str, Any] = field(default_factory=dict)
    position: float = 0
    due_date: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> TicketDict:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "labels": list(self.labels),
            "assignees": list(self.assignees),
            "parent_id": self.parent_id,
            "custom_fields": self.custom_fields,
            "position": self.position,
            "due_date": self.due_date,
            "created_at": ISOTimestamp(self.created_at),
            "updated_at": ISOTimestamp(self.updated_at),
        }


@dataclass
class Comment:
    id: str
    ticket_id: str
    author: str
    content: str
    parent_id: str | None = None
    created_at: str = ""

    def to_dict(self) -> CommentDict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "author": self.author,
            "content": self.content,
            "parent_id": self.parent_id,
            "created_at": ISOTimestamp(self.created_at),
        }


@dataclass
class Activity:
    id: str
    ticket_id: str
    actor: str
    action: ActivityAction
    changes: dict[str, FieldChange] = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> ActivityDict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "actor": self.actor,
            "action": self.action,
            "changes": self.changes,
            "created_at": ISOTimestamp(self.created_at),
        }


@dataclass
class Attachment:
    id: str
    ticket_id: str
    filename: str
    original_filename: str
    mime_type: str
    size_bytes: int
    storage_ref: str
    uploaded_by: str
    created_at: str = ""

    def to_dict(self) -> AttachmentDict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "filename": self.filename,
            "original_filename": self.original_filename,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "storage_ref": self.storage_ref,
            "uploaded_by": self.uploaded_by,
            "created_at": ISOTimestamp(self.created_at),
        }


@dataclass(frozen=True)
class Snapshot:
    """Ticket count for one (board, status, calendar date) key."""

    board_id: str
    status: str
    date: str
    count: int

    def to_dict(self) -> SnapshotDict:
        return {"board_id": self.board_id, "status": self.status, "date": self.date, "count": self.count}
