"""In-process publish/subscribe for lifecycle events.

Each ``TicketEngine`` owns one ``EventBus``; there is no process-wide
registry. Handlers run synchronously inside the publishing call, in
registration order. A handler that raises is logged and skipped so the
remaining handlers still run and the originating operation still succeeds.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from trellis.errors import ValidationError

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], object]

EVENT_NAMES: frozenset[str] = frozenset(
    {
        "board:created",
        "board:updated",
        "board:deleted",
        "ticket:created",
        "ticket:updated",
        "ticket:deleted",
        "comment:created",
    }
)


def _check_event(event: str) -> None:
    if event not in EVENT_NAMES:
        msg = f"Unknown event '{event}'. Valid events: {', '.join(sorted(EVENT_NAMES))}"
        raise ValidationError(msg)


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event: str, handler: EventHandler) -> None:
        _check_event(event)
        if not callable(handler):
            msg = "handler must be callable"
            raise ValidationError(msg)
        self._handlers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> bool:
        """Remove the first registration of *handler*. Returns False if it was not subscribed."""
        _check_event(event)
        handlers = self._handlers.get(event, [])
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        return True

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        _check_event(event)
        # Snapshot the list so a handler may unsubscribe itself mid-dispatch.
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
            except Exception:
                logger.warning("Event handler %r failed for %s", handler, event, exc_info=True)

    def clear(self) -> None:
        self._handlers.clear()
