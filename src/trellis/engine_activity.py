"""ActivityMixin -- field-level diffing and the append-only audit log.

All methods access ``self.storage``, ``self.get_ticket()``, etc. via
Python's MRO when composed into ``TicketEngine``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from trellis.engine_base import EngineProtocol
from trellis.errors import ValidationError
from trellis.models import ACTIVITY_ACTIONS, Activity, ActivityAction
from trellis.storage import ActivityQuery
from trellis.types.core import FieldChange

logger = logging.getLogger(__name__)

_MAX_ACTIVITY_LIMIT = 1000


def compute_diff(before: Mapping[str, Any], after: Mapping[str, Any], keys: Iterable[str]) -> dict[str, FieldChange]:
    """Diff two record dicts, restricted to *keys*.

    Values are compared by structural equality, so a label list or a nested
    custom-field map that was re-supplied unchanged produces no entry.
    Keys keep the order in which they were supplied.
    """
    changes: dict[str, FieldChange] = {}
    for key in keys:
        old = before.get(key)
        new = after.get(key)
        if old != new:
            changes[key] = FieldChange(old=old, new=new)
    return changes


class ActivityMixin(EngineProtocol):
    """Appending and reading ticket activities."""

    def _record_activity(
        self,
        ticket_id: str,
        action: ActivityAction,
        changes: Mapping[str, FieldChange],
        *,
        actor: str,
    ) -> Activity:
        activity = self.storage.create_activity(
            {
                "ticket_id": ticket_id,
                "actor": actor,
                "action": action,
                "changes": dict(changes),
                "created_at": self._now(),
            }
        )
        logger.debug("Activity %s on %s by %s: %s", action, ticket_id, actor, ", ".join(changes))
        return activity

    def get_activity(self, ticket_id: str, *, limit: int = 50, newest_first: bool = False) -> list[Activity]:
        """Activity feed for one ticket. Chronological unless ``newest_first``."""
        self.get_ticket(ticket_id)
        if limit < 1 or limit > _MAX_ACTIVITY_LIMIT:
            msg = f"limit must be between 1 and {_MAX_ACTIVITY_LIMIT}, got {limit}"
            raise ValidationError(msg)
        if newest_first:
            return self.storage.list_activities(ActivityQuery(ticket_id=ticket_id, limit=limit, newest_first=True))
        # Oldest-first with a limit keeps the *latest* N entries, not the first N.
        recent = self.storage.list_activities(ActivityQuery(ticket_id=ticket_id, limit=limit, newest_first=True))
        recent.reverse()
        return recent

    def query_activity(self, query: ActivityQuery) -> list[Activity]:
        if query.actions is not None:
            unknown = set(query.actions) - ACTIVITY_ACTIONS
            if unknown:
                msg = f"Unknown activity action(s): {', '.join(sorted(unknown))}"
                raise ValidationError(msg)
        if query.since is not None and query.until is not None and query.since > query.until:
            msg = f"since ({query.since}) must not be after until ({query.until})"
            raise ValidationError(msg)
        return self.storage.list_activities(query)
