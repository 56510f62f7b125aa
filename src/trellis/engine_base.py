"""Shared utilities, types, and Protocol for engine mixins."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from trellis.events import EventBus
    from trellis.models import Board, Ticket, Workflow
    from trellis.storage import StorageAdapter
    from trellis.workflows import WorkflowRegistry

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(moment: datetime) -> str:
    """ISO-8601 string in UTC. Naive datetimes are taken to be UTC already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC).isoformat()
    return moment.astimezone(UTC).isoformat()


def day_start_iso(day: date) -> str:
    """ISO timestamp of UTC midnight at the start of *day*."""
    return datetime(day.year, day.month, day.day, tzinfo=UTC).isoformat()


class EngineProtocol(Protocol):
    """Shared attributes and methods that engine mixins access via self.

    Mixins inherit this Protocol so mypy can type-check self.storage,
    self.get_ticket(), etc. without ``type: ignore`` on every call.
    Actual implementations are provided by TicketEngine at composition time.
    """

    storage: StorageAdapter
    workflows: WorkflowRegistry
    events: EventBus
    _clock: Clock

    def _now(self) -> str: ...

    def _today(self) -> date: ...

    def get_board(self, board_id: str) -> Board: ...

    def get_ticket(self, ticket_id: str) -> Ticket: ...

    def get_board_workflow(self, board_id: str) -> Workflow: ...
