"""Trellis -- ticket lifecycle engine with workflow-governed boards and flow analytics."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("trellis")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from trellis.core import TicketEngine
from trellis.errors import InvalidTransitionError, NotFoundError, StorageError, TrellisError, ValidationError
from trellis.models import Board, Ticket, Workflow
from trellis.storage_memory import MemoryStorage
from trellis.storage_sqlite import SQLiteStorage

__all__ = [
    "Board",
    "InvalidTransitionError",
    "MemoryStorage",
    "NotFoundError",
    "SQLiteStorage",
    "StorageError",
    "Ticket",
    "TicketEngine",
    "TrellisError",
    "ValidationError",
    "Workflow",
    "__version__",
]
