"""CLI for the trellis ticket engine.

Convention-based: discovers .trellis/ by walking up from cwd.

Usage:
    trellis init                                  # Initialize .trellis/ in cwd
    trellis workflows                             # List workflows
    trellis board-create "Sprint 12"              # Create a board (kanban workflow)
    trellis boards                                # List boards
    trellis create <board> "Fix login" -p high    # Create a ticket
    trellis show <id>                             # Show ticket details
    trellis list <board> --status=todo            # List tickets
    trellis move <id> in_progress                 # Change status
    trellis assign <id> alice bob                 # Replace assignees
    trellis comment <id> "text"                   # Add comment
    trellis activity <id>                         # Audit trail
    trellis search <board> "status:todo login"    # Search
    trellis snapshot <board>                      # Record today's CFD counts
    trellis backfill <board> --start ... --end ...
    trellis cfd <board> --start ... --end ...     # CFD read-out
    trellis export -o dump.json                   # Export everything
    trellis import dump.json                      # Import (idempotent)
    trellis serve                                 # HTTP API
"""

from __future__ import annotations

import json as json_mod
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from trellis import __version__
from trellis.core import (
    CONFIG_FILENAME,
    DB_FILENAME,
    TRELLIS_DIR_NAME,
    TicketEngine,
    find_trellis_root,
    read_config,
    write_config,
)
from trellis.errors import InvalidTransitionError, TrellisError
from trellis.interchange import export_data, import_data
from trellis.logging import setup_logging
from trellis.models import PRIORITIES, Ticket
from trellis.storage_sqlite import SQLiteStorage
from trellis.workflows_data import DEFAULT_WORKFLOW_ID

logger = logging.getLogger(__name__)


def _get_engine() -> TicketEngine:
    """Discover .trellis/ and return an initialized TicketEngine."""
    try:
        trellis_dir = find_trellis_root()
    except FileNotFoundError:
        click.echo(f"No {TRELLIS_DIR_NAME}/ found. Run 'trellis init' first.", err=True)
        sys.exit(1)
    setup_logging(trellis_dir)
    return TicketEngine.from_project(trellis_dir.parent)


def _fail(exc: TrellisError, as_json: bool) -> NoReturn:
    """Report an engine error and exit 1."""
    ctx = click.get_current_context(silent=True)
    logger.warning("cli_error: %s", exc, extra={"op": ctx.command_path if ctx else "trellis", "error": exc.code})
    if as_json:
        payload: dict[str, Any] = {"error": str(exc), "code": exc.code}
        if isinstance(exc, InvalidTransitionError):
            payload["allowed"] = list(exc.allowed)
        click.echo(json_mod.dumps(payload))
    else:
        click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


def _echo_json(data: Any) -> None:
    click.echo(json_mod.dumps(data, indent=2, default=str))


def _ticket_line(ticket: Ticket) -> str:
    assignees = f" @{','.join(ticket.assignees)}" if ticket.assignees else ""
    return f"{ticket.id}  [{ticket.status}] ({ticket.priority}) {ticket.title}{assignees}"


def _parse_fields(pairs: tuple[str, ...], as_json: bool) -> dict[str, str]:
    fields: dict[str, str] = {}
    for f in pairs:
        if "=" not in f:
            if as_json:
                click.echo(json_mod.dumps({"error": f"Invalid field format: {f} (expected key=value)"}))
            else:
                click.echo(f"Invalid field format: {f} (expected key=value)", err=True)
            sys.exit(1)
        k, v = f.split("=", 1)
        fields[k] = v
    return fields


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="trellis")
@click.option("--actor", default="cli", help="Actor identity for audit trail (default: cli)")
@click.pass_context
def cli(ctx: click.Context, actor: str) -> None:
    """Trellis -- boards, workflows, and an audited ticket lifecycle."""
    ctx.ensure_object(dict)
    ctx.obj["actor"] = actor


@cli.command()
@click.option("--name", default=None, help="Project name (default: directory name)")
@click.option("--storage", type=click.Choice(["sqlite", "memory"]), default="sqlite", help="Storage backend")
@click.option("--default-workflow", default=DEFAULT_WORKFLOW_ID, help="Workflow for new boards")
def init(name: str | None, storage: str, default_workflow: str) -> None:
    """Initialize .trellis/ in the current directory."""
    cwd = Path.cwd()
    trellis_dir = cwd / TRELLIS_DIR_NAME

    if trellis_dir.exists():
        click.echo(f"{TRELLIS_DIR_NAME}/ already exists in {cwd}")
        # Still ensure DB is initialized
        config = read_config(trellis_dir)
        if config.get("storage", "sqlite") == "sqlite":
            with SQLiteStorage(trellis_dir / DB_FILENAME) as db:
                db.init()
        return

    name = name or cwd.name
    trellis_dir.mkdir()
    write_config(trellis_dir, {"name": name, "version": 1, "storage": storage, "default_workflow": default_workflow})

    if storage == "sqlite":
        with SQLiteStorage(trellis_dir / DB_FILENAME) as db:
            db.init()

    click.echo(f"Initialized {TRELLIS_DIR_NAME}/ in {cwd}")
    click.echo(f"  Name: {name}")
    click.echo(f"  Storage: {storage}")
    if storage == "sqlite":
        click.echo(f"  Database: {trellis_dir / DB_FILENAME}")
    click.echo(f"  Config: {trellis_dir / CONFIG_FILENAME}")
    click.echo("\nNext: trellis board-create <name>")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def workflows(as_json: bool) -> None:
    """List built-in and user-defined workflows."""
    with _get_engine() as engine:
        wfs = engine.list_workflows()
        if as_json:
            _echo_json([wf.to_dict() for wf in wfs])
            return
        for wf in wfs:
            tag = " (built-in)" if wf.is_builtin else ""
            click.echo(f"{wf.id}{tag}: {' -> '.join(wf.states)}")


@cli.command("board-create")
@click.argument("name")
@click.option("--workflow", "workflow_id", default=None, help="Workflow id (default: project default)")
@click.option("--description", "-d", default="", help="Description")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def board_create(name: str, workflow_id: str | None, description: str, as_json: bool) -> None:
    """Create a board."""
    with _get_engine() as engine:
        try:
            board = engine.create_board(name, workflow_id=workflow_id, description=description)
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json(board.to_dict())
        else:
            click.echo(f"Created board {board.id}: {board.name} ({board.workflow_id})")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def boards(as_json: bool) -> None:
    """List boards, newest first."""
    with _get_engine() as engine:
        found = engine.list_boards()
        if as_json:
            _echo_json([b.to_dict() for b in found])
            return
        if not found:
            click.echo("No boards.")
        for b in found:
            click.echo(f"{b.id}  {b.name} ({b.workflow_id})")


@cli.command()
@click.argument("board_id")
@click.argument("title")
@click.option("--status", default=None, help="Initial status (default: workflow initial state)")
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default=None, help="Priority")
@click.option("--parent", default=None, help="Parent ticket ID")
@click.option("--assignee", "-a", multiple=True, help="Assignee (repeatable)")
@click.option("--label", "-l", multiple=True, help="Label (repeatable)")
@click.option("--description", "-d", default="", help="Description")
@click.option("--due", default=None, help="Due date (YYYY-MM-DD)")
@click.option("--field", "-f", multiple=True, help="Custom field as key=value (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def create(
    ctx: click.Context,
    board_id: str,
    title: str,
    status: str | None,
    priority: str | None,
    parent: str | None,
    assignee: tuple[str, ...],
    label: tuple[str, ...],
    description: str,
    due: str | None,
    field: tuple[str, ...],
    as_json: bool,
) -> None:
    """Create a ticket on a board."""
    fields: dict[str, Any] = {"description": description}
    if status:
        fields["status"] = status
    if priority:
        fields["priority"] = priority
    if parent:
        fields["parent_id"] = parent
    if assignee:
        fields["assignees"] = list(assignee)
    if label:
        fields["labels"] = list(label)
    if due:
        fields["due_date"] = due
    custom = _parse_fields(field, as_json)
    if custom:
        fields["custom_fields"] = custom

    with _get_engine() as engine:
        try:
            ticket = engine.create_ticket(board_id, title, actor=ctx.obj["actor"], **fields)
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json(ticket.to_dict())
        else:
            click.echo(f"Created {ticket.id}: {ticket.title} [{ticket.status}]")


@cli.command()
@click.argument("ticket_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(ticket_id: str, as_json: bool) -> None:
    """Show ticket details."""
    with _get_engine() as engine:
        try:
            ticket = engine.get_ticket(ticket_id)
            transitions = engine.get_valid_transitions(ticket_id)
        except TrellisError as e:
            _fail(e, as_json)

        if as_json:
            _echo_json({**ticket.to_dict(), "valid_transitions": transitions})
            return

        click.echo(f"ID:       {ticket.id}")
        click.echo(f"Board:    {ticket.board_id}")
        click.echo(f"Title:    {ticket.title}")
        click.echo(f"Status:   {ticket.status}")
        click.echo(f"Priority: {ticket.priority}")
        if ticket.parent_id:
            click.echo(f"Parent:   {ticket.parent_id}")
        if ticket.assignees:
            click.echo(f"Assignees: {', '.join(ticket.assignees)}")
        if ticket.labels:
            click.echo(f"Labels:   {', '.join(ticket.labels)}")
        if ticket.due_date:
            click.echo(f"Due:      {ticket.due_date}")
        click.echo(f"Created:  {ticket.created_at}")
        click.echo(f"Next:     {', '.join(transitions) or '(terminal)'}")
        if ticket.description:
            click.echo(f"\n{ticket.description}")
        if ticket.custom_fields:
            click.echo("\nFields:")
            for k, v in ticket.custom_fields.items():
                click.echo(f"  {k}: {v}")


@cli.command("list")
@click.argument("board_id")
@click.option("--status", default=None, help="Filter by status")
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default=None, help="Filter by priority")
@click.option("--assignee", default=None, help="Filter by assignee")
@click.option("--label", default=None, help="Filter by label")
@click.option("--limit", default=100, type=int, help="Max results")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_tickets(
    board_id: str,
    status: str | None,
    priority: str | None,
    assignee: str | None,
    label: str | None,
    limit: int,
    as_json: bool,
) -> None:
    """List tickets on a board."""
    with _get_engine() as engine:
        try:
            tickets = engine.list_tickets(
                board_id=board_id, status=status, priority=priority, assignee=assignee, label=label, limit=limit
            )
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json([t.to_dict() for t in tickets])
            return
        for t in tickets:
            click.echo(_ticket_line(t))
        click.echo(f"\n{len(tickets)} ticket(s)")


@cli.command()
@click.argument("ticket_id")
@click.argument("status")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def move(ctx: click.Context, ticket_id: str, status: str, as_json: bool) -> None:
    """Move a ticket to another status."""
    with _get_engine() as engine:
        try:
            ticket = engine.move_ticket(ticket_id, status, actor=ctx.obj["actor"])
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json(ticket.to_dict())
        else:
            click.echo(f"Moved {ticket.id} to {ticket.status}")


@cli.command()
@click.argument("ticket_id")
@click.argument("assignees", nargs=-1)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def assign(ctx: click.Context, ticket_id: str, assignees: tuple[str, ...], as_json: bool) -> None:
    """Replace a ticket's assignees (no names clears them)."""
    with _get_engine() as engine:
        try:
            ticket = engine.assign_ticket(ticket_id, list(assignees), actor=ctx.obj["actor"])
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json(ticket.to_dict())
        else:
            click.echo(f"Assigned {ticket.id}: {', '.join(ticket.assignees) or '(nobody)'}")


@cli.command()
@click.argument("ticket_id")
@click.argument("text")
@click.option("--reply-to", default=None, help="Parent comment ID")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def comment(ctx: click.Context, ticket_id: str, text: str, reply_to: str | None, as_json: bool) -> None:
    """Add a comment to a ticket."""
    with _get_engine() as engine:
        try:
            if reply_to:
                c = engine.reply_to_comment(ticket_id, reply_to, text, ctx.obj["actor"])
            else:
                c = engine.add_comment(ticket_id, text, ctx.obj["actor"])
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json(c.to_dict())
        else:
            click.echo(f"Added comment {c.id} to {ticket_id}")


@cli.command()
@click.argument("ticket_id")
@click.option("--limit", default=50, type=int, help="Max entries")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def activity(ticket_id: str, limit: int, as_json: bool) -> None:
    """Show a ticket's audit trail, oldest first."""
    with _get_engine() as engine:
        try:
            entries = engine.get_activity(ticket_id, limit=limit)
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json([a.to_dict() for a in entries])
            return
        for a in entries:
            if a.action == "created":
                detail = ""
            else:
                detail = "  " + ", ".join(f"{k}: {v['old']!r} -> {v['new']!r}" for k, v in a.changes.items())
            click.echo(f"{a.created_at}  {a.action:<15} {a.actor}{detail}")


@cli.command()
@click.argument("board_id")
@click.argument("query")
@click.option("--limit", default=100, type=int, help="Max results")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def search(board_id: str, query: str, limit: int, as_json: bool) -> None:
    """Search a board, e.g. "status:todo label:bug login"."""
    with _get_engine() as engine:
        try:
            tickets = engine.search(board_id, query, limit=limit)
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json([t.to_dict() for t in tickets])
            return
        for t in tickets:
            click.echo(_ticket_line(t))
        click.echo(f"\n{len(tickets)} result(s)")


@cli.command()
@click.argument("board_id")
@click.option("--date", "day", default=None, help="Snapshot date YYYY-MM-DD (default: today, UTC)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def snapshot(board_id: str, day: str | None, as_json: bool) -> None:
    """Record per-status ticket counts for one day."""
    with _get_engine() as engine:
        try:
            counts = engine.take_snapshot(board_id, day)
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json(counts)
            return
        for status, n in counts.items():
            click.echo(f"{status:<15} {n}")


@cli.command()
@click.argument("board_id")
@click.option("--start", required=True, help="First date YYYY-MM-DD")
@click.option("--end", required=True, help="Last date YYYY-MM-DD (clamped to today)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def backfill(board_id: str, start: str, end: str, as_json: bool) -> None:
    """Reconstruct missing daily snapshots from the activity log."""
    with _get_engine() as engine:
        try:
            written = engine.backfill_snapshots(board_id, start, end)
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json(written)
        else:
            click.echo(f"Backfilled {len(written)} day(s)")


@cli.command()
@click.argument("board_id")
@click.option("--start", required=True, help="First date YYYY-MM-DD")
@click.option("--end", required=True, help="Last date YYYY-MM-DD")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def cfd(board_id: str, start: str, end: str, as_json: bool) -> None:
    """Show stored cumulative-flow counts for a date range."""
    with _get_engine() as engine:
        try:
            records = engine.get_cfd_data(board_id, start, end)
            states = engine.get_board_workflow(board_id).states
        except TrellisError as e:
            _fail(e, as_json)
        if as_json:
            _echo_json(records)
            return
        click.echo("date        " + " ".join(f"{s:>12}" for s in states))
        for rec in records:
            click.echo(f"{rec['date']}  " + " ".join(f"{rec['counts'].get(s, 0):>12}" for s in states))


@cli.command("export")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Write to file instead of stdout")
def export_cmd(output: Path | None) -> None:
    """Export boards, tickets, and user-defined workflows as JSON."""
    with _get_engine() as engine:
        text = json_mod.dumps(export_data(engine), indent=2, default=str)
    if output is None:
        click.echo(text)
    else:
        output.write_text(text + "\n")
        click.echo(f"Exported to {output}")


@cli.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def import_cmd(path: Path, as_json: bool) -> None:
    """Import an export document. Existing ids are skipped."""
    try:
        document = json_mod.loads(path.read_text())
    except json_mod.JSONDecodeError as e:
        click.echo(f"Error: invalid JSON in {path}: {e}", err=True)
        sys.exit(1)
    with _get_engine() as engine:
        try:
            result = import_data(engine, document)
        except TrellisError as e:
            _fail(e, as_json)
    if as_json:
        _echo_json(result)
    else:
        click.echo(
            f"Imported {result['boards_created']} board(s), {result['tickets_created']} ticket(s) "
            f"({result['boards_skipped']} board(s), {result['tickets_skipped']} ticket(s) already present)"
        )


@cli.command()
@click.option("--port", default=8417, type=int, help="Port (default: 8417)")
@click.option("--host", default="127.0.0.1", help="Bind address")
def serve(port: int, host: str) -> None:
    """Serve the HTTP API for this project."""
    from trellis.api import main as api_main

    try:
        trellis_dir = find_trellis_root()
    except FileNotFoundError:
        click.echo(f"No {TRELLIS_DIR_NAME}/ found. Run 'trellis init' first.", err=True)
        sys.exit(1)
    setup_logging(trellis_dir)
    click.echo(f"Trellis API: http://{host}:{port}/api")
    api_main(port, host=host)


if __name__ == "__main__":
    cli()
