"""Foundational TypedDicts for dataclass to_dict() returns."""

from __future__ import annotations

from typing import Any, NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)


class FieldChange(TypedDict):
    """One entry of an activity diff: the value before and after a mutation."""

    old: Any
    new: Any


class WorkflowDict(TypedDict):
    id: str
    name: str
    states: list[str]
    initial_state: str
    transitions: dict[str, list[str]]
    is_builtin: bool


class BoardDict(TypedDict):
    id: str
    name: str
    description: str
    workflow_id: str
    metadata: dict[str, Any]
    created_at: ISOTimestamp
    updated_at: ISOTimestamp


class TicketDict(TypedDict):
    id: str
    board_id: str
    title: str
    description: str
    status: str
    priority: str
    labels: list[str]
    assignees: list[str]
    parent_id: str | None
    custom_fields: dict[str, Any]
    position: float
    due_date: str | None
    created_at: ISOTimestamp
    updated_at: ISOTimestamp


class CommentDict(TypedDict):
    id: str
    ticket_id: str
    author: str
    content: str
    parent_id: str | None
    created_at: ISOTimestamp


class ActivityDict(TypedDict):
    id: str
    ticket_id: str
    actor: str
    action: str
    changes: dict[str, FieldChange]
    created_at: ISOTimestamp


class AttachmentDict(TypedDict):
    id: str
    ticket_id: str
    filename: str
    original_filename: str
    mime_type: str
    size_bytes: int
    storage_ref: str
    uploaded_by: str
    created_at: ISOTimestamp


class SnapshotDict(TypedDict):
    board_id: str
    status: str
    date: str
    count: int
