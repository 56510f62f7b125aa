"""CFDMixin -- cumulative-flow snapshots and historical backfill.

Snapshots are one row per (board, status, UTC calendar date). Backfill
rebuilds the rows for past dates by starting from every ticket's current
status and undoing ``status_changed`` activities newest-first, one day
boundary at a time.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta

from trellis.engine_base import EngineProtocol, day_start_iso
from trellis.errors import ValidationError
from trellis.models import Workflow
from trellis.storage import ActivityQuery, TicketQuery
from trellis.types.api import CFDRecord
from trellis.validation import parse_day

logger = logging.getLogger(__name__)

# Backfill walks one day at a time; cap the range so a typo can't spin for years.
MAX_BACKFILL_DAYS = 3660


def _parse_iso(ts: str) -> datetime | None:
    """Parse an ISO timestamp, treating naive values as UTC. None if unparseable."""
    try:
        dt = datetime.fromisoformat(ts)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _empty_counts(workflow: Workflow) -> dict[str, int]:
    return dict.fromkeys(workflow.states, 0)


class CFDMixin(EngineProtocol):
    """Snapshot, read-out, and reconstruction of per-status daily counts."""

    def take_snapshot(self, board_id: str, day: date | str | None = None) -> dict[str, int]:
        """Count the board's tickets per workflow state and upsert them for *day* (default today).

        Re-taking a snapshot for the same day overwrites that day's rows.
        """
        workflow = self.get_board_workflow(board_id)
        snapshot_day = self._today() if day is None else parse_day(day, "day")
        counts = _empty_counts(workflow)
        for ticket in self.storage.list_tickets(TicketQuery(board_id=board_id)):
            if ticket.status in counts:
                counts[ticket.status] += 1
        iso_day = snapshot_day.isoformat()
        for status, count in counts.items():
            self.storage.upsert_snapshot(board_id, status, iso_day, count)
        logger.debug("Snapshot %s @ %s: %s", board_id, iso_day, counts)
        return counts

    def get_cfd_data(self, board_id: str, start: date | str, end: date | str) -> list[CFDRecord]:
        """Stored snapshot rows in ``[start, end]``, one record per date that has rows.

        Every workflow state is present in each record's counts; states
        without a stored row for that date report zero.
        """
        workflow = self.get_board_workflow(board_id)
        first, last = self._date_range(start, end)
        by_date: dict[str, dict[str, int]] = {}
        for row in self.storage.list_snapshots(board_id, first.isoformat(), last.isoformat()):
            counts = by_date.setdefault(row.date, _empty_counts(workflow))
            if row.status in counts:
                counts[row.status] = row.count
        return [CFDRecord(date=d, counts=by_date[d]) for d in sorted(by_date)]

    def backfill_snapshots(self, board_id: str, start: date | str, end: date | str) -> dict[str, dict[str, int]]:
        """Reconstruct and persist counts for dates in ``[start, end]`` with no stored rows.

        ``end`` is clamped to today. Each day's counts reflect ticket states
        at the end of that day (UTC); tickets created later are excluded.
        Tickets with no status history are assumed to have held their
        current status throughout. Returns the newly written dates, ascending.
        """
        workflow = self.get_board_workflow(board_id)
        first, last = self._date_range(start, end)
        last = min(last, self._today())
        if first > last:
            return {}
        if (last - first).days >= MAX_BACKFILL_DAYS:
            msg = f"Backfill range too large: {(last - first).days + 1} days (max {MAX_BACKFILL_DAYS})"
            raise ValidationError(msg)

        existing = {row.date for row in self.storage.list_snapshots(board_id, first.isoformat(), last.isoformat())}

        tickets = self.storage.list_tickets(TicketQuery(board_id=board_id))
        status_of = {t.id: t.status for t in tickets}
        created_at = {t.id: _parse_iso(t.created_at) for t in tickets}

        # Only changes after the end of the first day can alter any result.
        history = self.storage.list_activities(
            ActivityQuery(
                ticket_ids=tuple(status_of),
                actions=frozenset({"status_changed"}),
                since=day_start_iso(first + timedelta(days=1)),
                newest_first=True,
            )
        )
        undo = [(_parse_iso(a.created_at), a.ticket_id, a.changes.get("status")) for a in history]

        written: dict[str, dict[str, int]] = {}
        cursor = 0
        day = last
        while day >= first:
            boundary = datetime(day.year, day.month, day.day, tzinfo=UTC) + timedelta(days=1)
            while cursor < len(undo):
                at, ticket_id, change = undo[cursor]
                if at is not None and at < boundary:
                    break
                if change is not None and ticket_id in status_of:
                    status_of[ticket_id] = change["old"]
                cursor += 1

            iso_day = day.isoformat()
            if iso_day not in existing:
                counts = _empty_counts(workflow)
                for ticket_id, status in status_of.items():
                    born = created_at[ticket_id]
                    if born is not None and born >= boundary:
                        continue
                    if status in counts:
                        counts[status] += 1
                for status, count in counts.items():
                    self.storage.upsert_snapshot(board_id, status, iso_day, count)
                written[iso_day] = counts
            day -= timedelta(days=1)

        logger.info(
            "Backfilled %d day(s) for board %s (%s..%s, %d skipped)",
            len(written),
            board_id,
            first.isoformat(),
            last.isoformat(),
            len(existing),
        )
        return dict(sorted(written.items()))

    @staticmethod
    def _date_range(start: date | str, end: date | str) -> tuple[date, date]:
        first = parse_day(start, "start")
        last = parse_day(end, "end")
        if first > last:
            msg = f"start ({first.isoformat()}) must not be after end ({last.isoformat()})"
            raise ValidationError(msg)
        return first, last
