# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from core.py, engine_base.py, or any mixin; types must stay import-cycle free.
"""Typed return-value contracts for trellis core and API layers."""

from __future__ import annotations

from trellis.types.api import (
    BatchFailure,
    BatchUpdateResponse,
    CFDRecord,
    ExportDocument,
    ErrorResponse,
    ImportResult,
    KanbanView,
)
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

__all__ = [
    "ActivityDict",
    "AttachmentDict",
    "BatchFailure",
    "BatchUpdateResponse",
    "BoardDict",
    "CFDRecord",
    "CommentDict",
    "ErrorResponse",
    "ExportDocument",
    "FieldChange",
    "ISOTimestamp",
    "ImportResult",
    "KanbanView",
    "SnapshotDict",
    "TicketDict",
    "WorkflowDict",
]
