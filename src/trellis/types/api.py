"""TypedDicts for engine envelopes, analytics read-outs, and interchange documents."""

from __future__ import annotations

from typing import Any, NotRequired, TypedDict

from trellis.types.core import BoardDict, TicketDict, WorkflowDict


class BatchFailure(TypedDict):
    """A single item that failed inside a bulk update."""

    id: str
    error: str
    code: str
    allowed: NotRequired[list[str]]


class BatchUpdateResponse(TypedDict):
    """Bulk update result: updated tickets plus per-item failures, in input order."""

    succeeded: list[TicketDict]
    failed: list[BatchFailure]
    count: int


class CFDRecord(TypedDict):
    """Per-date status counts for one board. Every workflow state is present."""

    date: str
    counts: dict[str, int]


class KanbanView(TypedDict):
    board: BoardDict
    workflow: WorkflowDict
    columns: dict[str, list[TicketDict]]


class ExportDocument(TypedDict):
    """Versioned interchange document. Boards and tickets are flat lists."""

    version: str
    exported_at: str
    boards: list[BoardDict]
    tickets: list[TicketDict]
    workflows: NotRequired[list[WorkflowDict]]


class ImportResult(TypedDict):
    workflows_created: int
    boards_created: int
    boards_skipped: int
    tickets_created: int
    tickets_skipped: int


class ErrorResponse(TypedDict):
    """Standard error envelope returned by the HTTP API."""

    error: dict[str, Any]
