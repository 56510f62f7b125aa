"""Embedded single-file SQLite storage adapter.

One connection per adapter, WAL mode, foreign keys ON (cascades do the
heavy lifting for board/ticket deletes). Every public method runs in its
own short transaction and commits before returning; any ``sqlite3.Error``
is rolled back and re-raised as ``StorageError``.

Structured columns (labels, assignees, custom_fields, metadata, changes,
states, transitions) are stored as JSON text and decoded on read.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from trellis.errors import StorageError
from trellis.models import (
    DEFAULT_PRIORITY,
    Activity,
    Attachment,
    Board,
    Comment,
    Snapshot,
    Ticket,
    Workflow,
)
from trellis.storage import (
    ANY_PARENT,
    BOARD_MUTABLE_FIELDS,
    TICKET_MUTABLE_FIELDS,
    ActivityQuery,
    TicketQuery,
    _now_iso,
    decode_json,
    encode_json,
    new_id,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS workflows (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    states        TEXT NOT NULL,
    initial_state TEXT NOT NULL,
    transitions   TEXT NOT NULL DEFAULT '{}',
    is_builtin    BOOLEAN NOT NULL DEFAULT 0,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS boards (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    description TEXT DEFAULT '',
    workflow_id TEXT NOT NULL,
    metadata    TEXT DEFAULT '{}',
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tickets (
    id            TEXT PRIMARY KEY,
    board_id      TEXT NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
    title         TEXT NOT NULL,
    description   TEXT DEFAULT '',
    status        TEXT NOT NULL,
    priority      TEXT NOT NULL DEFAULT 'medium',
    labels        TEXT DEFAULT '[]',
    assignees     TEXT DEFAULT '[]',
    parent_id     TEXT REFERENCES tickets(id) ON DELETE SET NULL,
    custom_fields TEXT DEFAULT '{}',
    position      REAL NOT NULL DEFAULT 0,
    due_date      TEXT,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,

    CHECK (priority IN ('urgent', 'high', 'medium', 'low'))
);

CREATE INDEX IF NOT EXISTS idx_tickets_board ON tickets(board_id);
CREATE INDEX IF NOT EXISTS idx_tickets_board_status ON tickets(board_id, status);
CREATE INDEX IF NOT EXISTS idx_tickets_parent ON tickets(parent_id);
CREATE INDEX IF NOT EXISTS idx_tickets_order ON tickets(position, created_at DESC);

CREATE TABLE IF NOT EXISTS comments (
    id         TEXT PRIMARY KEY,
    ticket_id  TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    author     TEXT NOT NULL,
    content    TEXT NOT NULL,
    parent_id  TEXT REFERENCES comments(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_comments_ticket ON comments(ticket_id, created_at);

CREATE TABLE IF NOT EXISTS activities (
    id         TEXT PRIMARY KEY,
    ticket_id  TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    actor      TEXT NOT NULL,
    action     TEXT NOT NULL,
    changes    TEXT DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activities_ticket ON activities(ticket_id, created_at);
CREATE INDEX IF NOT EXISTS idx_activities_action_time ON activities(action, created_at);

CREATE TABLE IF NOT EXISTS attachments (
    id                TEXT PRIMARY KEY,
    ticket_id         TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    filename          TEXT NOT NULL,
    original_filename TEXT NOT NULL,
    mime_type         TEXT NOT NULL DEFAULT 'application/octet-stream',
    size_bytes        INTEGER NOT NULL DEFAULT 0,
    storage_ref       TEXT NOT NULL DEFAULT '',
    uploaded_by       TEXT NOT NULL DEFAULT '',
    created_at        TEXT NOT NULL,

    CHECK (size_bytes >= 0)
);

CREATE INDEX IF NOT EXISTS idx_attachments_ticket ON attachments(ticket_id);

CREATE TABLE IF NOT EXISTS cfd_snapshots (
    board_id TEXT NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
    status   TEXT NOT NULL,
    date     TEXT NOT NULL,
    count    INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (board_id, status, date)
);
"""

CURRENT_SCHEMA_VERSION = 1


def _py_lower(value: str | None) -> str | None:
    return value.lower() if value is not None else None


class SQLiteStorage:
    """Direct SQLite operations. Pass ``":memory:"`` for a throwaway database."""

    def __init__(self, db_path: str | Path = ":memory:", *, check_same_thread: bool = True) -> None:
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread

    def __enter__(self) -> SQLiteStorage:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level="DEFERRED",
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
            # LIKE and lower() fold ASCII only; match the in-memory adapter's str.lower().
            self._conn.create_function("py_lower", 1, _py_lower, deterministic=True)
        return self._conn

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success; roll back and raise StorageError on sqlite3.Error."""
        try:
            yield self.conn
            self.conn.commit()
        except sqlite3.Error as exc:
            if self._conn is not None:
                with contextlib.suppress(sqlite3.Error):
                    self._conn.rollback()
            logger.warning("SQLite operation failed on %s: %s", self.db_path, exc)
            raise StorageError(str(exc)) from exc

    def init(self) -> None:
        """Create tables (if new), stamp the schema version, seed built-in workflows.

        Seeding is idempotent: presets already present are left untouched.
        """
        from trellis.workflows import builtin_workflows

        with self._transaction() as conn:
            version: int = conn.execute("PRAGMA user_version").fetchone()[0]
            if version == 0:
                conn.executescript(SCHEMA_SQL)
                conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
            now = _now_iso()
            for wf in builtin_workflows():
                cur = conn.execute(
                    "INSERT OR IGNORE INTO workflows (id, name, states, initial_state, transitions, is_builtin, created_at) "
                    "VALUES (?, ?, ?, ?, ?, 1, ?)",
                    (wf.id, wf.name, encode_json(list(wf.states)), wf.initial_state, encode_json(wf.to_dict()["transitions"]), now),
                )
                if cur.rowcount:
                    logger.debug("Seeded workflow: %s", wf.id)

    def get_schema_version(self) -> int:
        result: int = self.conn.execute("PRAGMA user_version").fetchone()[0]
        return result

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -- Row builders --------------------------------------------------------

    @staticmethod
    def _build_workflow(row: sqlite3.Row) -> Workflow:
        transitions = decode_json(row["transitions"], {})
        return Workflow(
            id=row["id"],
            name=row["name"],
            states=tuple(decode_json(row["states"], [])),
            initial_state=row["initial_state"],
            transitions={state: tuple(targets) for state, targets in transitions.items()},
            is_builtin=bool(row["is_builtin"]),
        )

    @staticmethod
    def _build_board(row: sqlite3.Row) -> Board:
        return Board(
            id=row["id"],
            name=row["name"],
            workflow_id=row["workflow_id"],
            description=row["description"] or "",
            metadata=decode_json(row["metadata"], {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _build_ticket(row: sqlite3.Row) -> Ticket:
        position = row["position"]
        return Ticket(
            id=row["id"],
            board_id=row["board_id"],
            title=row["title"],
            status=row["status"],
            description=row["description"] or "",
            priority=row["priority"],
            labels=decode_json(row["labels"], []),
            assignees=decode_json(row["assignees"], []),
            parent_id=row["parent_id"],
            custom_fields=decode_json(row["custom_fields"], {}),
            # REAL column: hand integral positions back as int.
            position=int(position) if float(position).is_integer() else position,
            due_date=row["due_date"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _build_comment(row: sqlite3.Row) -> Comment:
        return Comment(
            id=row["id"],
            ticket_id=row["ticket_id"],
            author=row["author"],
            content=row["content"],
            parent_id=row["parent_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _build_activity(row: sqlite3.Row) -> Activity:
        return Activity(
            id=row["id"],
            ticket_id=row["ticket_id"],
            actor=row["actor"],
            action=row["action"],
            changes=decode_json(row["changes"], {}),
            created_at=row["created_at"],
        )

    @staticmethod
    def _build_attachment(row: sqlite3.Row) -> Attachment:
        return Attachment(
            id=row["id"],
            ticket_id=row["ticket_id"],
            filename=row["filename"],
            original_filename=row["original_filename"],
            mime_type=row["mime_type"],
            size_bytes=row["size_bytes"],
            storage_ref=row["storage_ref"],
            uploaded_by=row["uploaded_by"],
            created_at=row["created_at"],
        )

    # -- Workflows -----------------------------------------------------------

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
        return self._build_workflow(row) if row is not None else None

    def list_workflows(self) -> list[Workflow]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM workflows ORDER BY is_builtin DESC, id ASC").fetchall()
        return [self._build_workflow(r) for r in rows]

    def save_workflow(self, workflow: Workflow) -> Workflow:
        data = workflow.to_dict()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO workflows (id, name, states, initial_state, transitions, is_builtin, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET name = excluded.name, states = excluded.states, "
                "initial_state = excluded.initial_state, transitions = excluded.transitions",
                (
                    workflow.id,
                    workflow.name,
                    encode_json(data["states"]),
                    workflow.initial_state,
                    encode_json(data["transitions"]),
                    int(workflow.is_builtin),
                    _now_iso(),
                ),
            )
        return workflow

    # -- Boards --------------------------------------------------------------

    def create_board(self, data: Mapping[str, Any]) -> Board:
        now = _now_iso()
        board_id = data.get("id") or new_id("board")
        created_at = data.get("created_at") or now
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO boards (id, name, description, workflow_id, metadata, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    board_id,
                    data["name"],
                    data.get("description") or "",
                    data["workflow_id"],
                    encode_json(dict(data.get("metadata") or {})),
                    created_at,
                    data.get("updated_at") or created_at,
                ),
            )
            row = conn.execute("SELECT * FROM boards WHERE id = ?", (board_id,)).fetchone()
        return self._build_board(row)

    def get_board(self, board_id: str) -> Board | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM boards WHERE id = ?", (board_id,)).fetchone()
        return self._build_board(row) if row is not None else None

    def list_boards(self) -> list[Board]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM boards ORDER BY created_at DESC, rowid DESC").fetchall()
        return [self._build_board(r) for r in rows]

    def update_board(self, board_id: str, updates: Mapping[str, Any]) -> Board | None:
        sets: list[str] = []
        params: list[Any] = []
        for key, value in updates.items():
            if key not in BOARD_MUTABLE_FIELDS:
                continue
            sets.append(f"{key} = ?")
            params.append(encode_json(value) if key == "metadata" else value)
        with self._transaction() as conn:
            if sets:
                sets.append("updated_at = ?")
                params.extend([updates.get("updated_at") or _now_iso(), board_id])
                conn.execute(f"UPDATE boards SET {', '.join(sets)} WHERE id = ?", params)
            row = conn.execute("SELECT * FROM boards WHERE id = ?", (board_id,)).fetchone()
        return self._build_board(row) if row is not None else None

    def delete_board(self, board_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM boards WHERE id = ?", (board_id,))
        return cur.rowcount > 0

    # -- Tickets -------------------------------------------------------------

    _JSON_TICKET_FIELDS = frozenset({"labels", "assignees", "custom_fields"})

    def create_ticket(self, data: Mapping[str, Any]) -> Ticket:
        now = _now_iso()
        ticket_id = data.get("id") or new_id("ticket")
        created_at = data.get("created_at") or now
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO tickets (id, board_id, title, description, status, priority, labels, assignees, "
                "parent_id, custom_fields, position, due_date, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    ticket_id,
                    data["board_id"],
                    data["title"],
                    data.get("description") or "",
                    data["status"],
                    data.get("priority") or DEFAULT_PRIORITY,
                    encode_json(list(data.get("labels") or [])),
                    encode_json(list(data.get("assignees") or [])),
                    data.get("parent_id"),
                    encode_json(dict(data.get("custom_fields") or {})),
                    data.get("position") or 0,
                    data.get("due_date"),
                    created_at,
                    data.get("updated_at") or created_at,
                ),
            )
            row = conn.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
        return self._build_ticket(row)

    def get_ticket(self, ticket_id: str) -> Ticket | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
        return self._build_ticket(row) if row is not None else None

    def list_tickets(self, query: TicketQuery | None = None) -> list[Ticket]:
        query = query or TicketQuery()
        where: list[str] = []
        params: list[Any] = []

        if query.board_id is not None:
            where.append("board_id = ?")
            params.append(query.board_id)
        if query.status is not None:
            where.append("status = ?")
            params.append(query.status)
        if query.priority is not None:
            where.append("priority = ?")
            params.append(query.priority)
        if query.assignee is not None:
            where.append("EXISTS (SELECT 1 FROM json_each(tickets.assignees) WHERE value = ?)")
            params.append(query.assignee)
        if query.label is not None:
            where.append("EXISTS (SELECT 1 FROM json_each(tickets.labels) WHERE value = ?)")
            params.append(query.label)
        if query.parent_id is not ANY_PARENT:
            if query.parent_id is None:
                where.append("parent_id IS NULL")
            else:
                where.append("parent_id = ?")
                params.append(query.parent_id)
        if query.search:
            needle = query.search.lower()
            where.append("(instr(py_lower(title), ?) > 0 OR instr(py_lower(coalesce(description, '')), ?) > 0)")
            params.extend([needle, needle])

        sql = "SELECT * FROM tickets"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY position ASC, created_at DESC, rowid DESC"
        if query.limit is not None or query.offset:
            sql += " LIMIT ? OFFSET ?"
            params.extend([query.limit if query.limit is not None else -1, query.offset])

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._build_ticket(r) for r in rows]

    def update_ticket(self, ticket_id: str, updates: Mapping[str, Any]) -> Ticket | None:
        sets: list[str] = []
        params: list[Any] = []
        for key, value in updates.items():
            if key not in TICKET_MUTABLE_FIELDS:
                continue
            sets.append(f"{key} = ?")
            params.append(encode_json(value) if key in self._JSON_TICKET_FIELDS else value)
        with self._transaction() as conn:
            if sets:
                sets.append("updated_at = ?")
                params.extend([updates.get("updated_at") or _now_iso(), ticket_id])
                conn.execute(f"UPDATE tickets SET {', '.join(sets)} WHERE id = ?", params)
            row = conn.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
        return self._build_ticket(row) if row is not None else None

    def delete_ticket(self, ticket_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM tickets WHERE id = ?", (ticket_id,))
        return cur.rowcount > 0

    # -- Comments ------------------------------------------------------------

    def create_comment(self, data: Mapping[str, Any]) -> Comment:
        comment_id = data.get("id") or new_id("comment")
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO comments (id, ticket_id, author, content, parent_id, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (comment_id, data["ticket_id"], data["author"], data["content"], data.get("parent_id"), data.get("created_at") or _now_iso()),
            )
            row = conn.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
        return self._build_comment(row)

    def get_comment(self, comment_id: str) -> Comment | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
        return self._build_comment(row) if row is not None else None

    def list_comments(self, ticket_id: str) -> list[Comment]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM comments WHERE ticket_id = ? ORDER BY created_at ASC, rowid ASC",
                (ticket_id,),
            ).fetchall()
        return [self._build_comment(r) for r in rows]

    def delete_comment(self, comment_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
        return cur.rowcount > 0

    # -- Activities ----------------------------------------------------------

    def create_activity(self, data: Mapping[str, Any]) -> Activity:
        activity_id = data.get("id") or new_id("activity")
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO activities (id, ticket_id, actor, action, changes, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    activity_id,
                    data["ticket_id"],
                    data["actor"],
                    data["action"],
                    encode_json(dict(data.get("changes") or {})),
                    data.get("created_at") or _now_iso(),
                ),
            )
            row = conn.execute("SELECT * FROM activities WHERE id = ?", (activity_id,)).fetchone()
        return self._build_activity(row)

    def list_activities(self, query: ActivityQuery) -> list[Activity]:
        where: list[str] = []
        params: list[Any] = []
        if query.ticket_id is not None:
            where.append("ticket_id = ?")
            params.append(query.ticket_id)
        if query.ticket_ids is not None:
            # json_each keeps large id sets clear of SQLite's bound-variable limit.
            where.append("ticket_id IN (SELECT value FROM json_each(?))")
            params.append(encode_json(list(query.ticket_ids)))
        if query.actions is not None:
            where.append("action IN (SELECT value FROM json_each(?))")
            params.append(encode_json(sorted(query.actions)))
        if query.since is not None:
            where.append("created_at >= ?")
            params.append(query.since)
        if query.until is not None:
            where.append("created_at < ?")
            params.append(query.until)

        direction = "DESC" if query.newest_first else "ASC"
        sql = "SELECT * FROM activities"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += f" ORDER BY created_at {direction}, rowid {direction}"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(query.limit)

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._build_activity(r) for r in rows]

    # -- Attachments ---------------------------------------------------------

    def create_attachment(self, data: Mapping[str, Any]) -> Attachment:
        attachment_id = data.get("id") or new_id("attachment")
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO attachments (id, ticket_id, filename, original_filename, mime_type, size_bytes, "
                "storage_ref, uploaded_by, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    attachment_id,
                    data["ticket_id"],
                    data["filename"],
                    data.get("original_filename") or data["filename"],
                    data.get("mime_type") or "application/octet-stream",
                    int(data.get("size_bytes") or 0),
                    data.get("storage_ref") or "",
                    data.get("uploaded_by") or "",
                    data.get("created_at") or _now_iso(),
                ),
            )
            row = conn.execute("SELECT * FROM attachments WHERE id = ?", (attachment_id,)).fetchone()
        return self._build_attachment(row)

    def get_attachment(self, attachment_id: str) -> Attachment | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM attachments WHERE id = ?", (attachment_id,)).fetchone()
        return self._build_attachment(row) if row is not None else None

    def list_attachments(self, ticket_id: str) -> list[Attachment]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM attachments WHERE ticket_id = ? ORDER BY created_at ASC, rowid ASC",
                (ticket_id,),
            ).fetchall()
        return [self._build_attachment(r) for r in rows]

    def delete_attachment(self, attachment_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM attachments WHERE id = ?", (attachment_id,))
        return cur.rowcount > 0

    # -- CFD snapshots -------------------------------------------------------

    def upsert_snapshot(self, board_id: str, status: str, date: str, count: int) -> Snapshot:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO cfd_snapshots (board_id, status, date, count) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(board_id, status, date) DO UPDATE SET count = excluded.count",
                (board_id, status, date, count),
            )
        return Snapshot(board_id=board_id, status=status, date=date, count=count)

    def list_snapshots(self, board_id: str, start: str, end: str) -> list[Snapshot]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT board_id, status, date, count FROM cfd_snapshots "
                "WHERE board_id = ? AND date >= ? AND date <= ? ORDER BY date ASC, status ASC",
                (board_id, start, end),
            ).fetchall()
        return [Snapshot(board_id=r["board_id"], status=r["status"], date=r["date"], count=r["count"]) for r in rows]
