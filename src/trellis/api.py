"""HTTP API for trellis -- a thin FastAPI layer over ``TicketEngine``.

A module-level ``_engine`` is set at startup (``main()``) or by tests and
injected into every handler via ``Depends(_get_engine)``. Engine errors are
mapped to HTTP status codes in one place:

    NotFoundError            -> 404 NOT_FOUND
    InvalidTransitionError   -> 409 INVALID_TRANSITION (details.allowed)
    ValidationError          -> 400 VALIDATION_ERROR
    StorageError             -> 500 STORAGE_ERROR

Usage:
    trellis serve                    # http://127.0.0.1:8417
    trellis serve --port 9000
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from trellis.core import TicketEngine
from trellis.errors import InvalidTransitionError, NotFoundError, StorageError, TrellisError, ValidationError
from trellis.interchange import export_data, import_data
from trellis.storage import TicketQuery
from trellis.types.api import BatchUpdateResponse
from trellis.validation import sanitize_actor

DEFAULT_PORT = 8417

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level state -- set by main() or test fixtures
# ---------------------------------------------------------------------------

_engine: TicketEngine | None = None


def _get_engine() -> TicketEngine:
    if _engine is None:
        raise HTTPException(status_code=500, detail="Engine not initialized")
    return _engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error_response(
    message: str,
    code: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Return a structured error response and log the error."""
    logger.warning("API error [%s] %s: %s", status_code, code, message, extra={"error": code})
    return JSONResponse(
        {"error": {"message": message, "code": code, "details": details or {}}},
        status_code=status_code,
    )


def _engine_error_response(exc: TrellisError) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        return _error_response(str(exc), "NOT_FOUND", 404, {"kind": exc.kind, "id": exc.identifier})
    if isinstance(exc, InvalidTransitionError):
        return _error_response(
            str(exc),
            "INVALID_TRANSITION",
            409,
            {"from": exc.from_state, "to": exc.to_state, "allowed": list(exc.allowed)},
        )
    if isinstance(exc, ValidationError):
        return _error_response(str(exc), "VALIDATION_ERROR", 400)
    if isinstance(exc, StorageError):
        return _error_response("Storage failure", "STORAGE_ERROR", 500)
    return _error_response(str(exc), "INTERNAL_ERROR", 500)


async def _parse_json_body(request: Request) -> dict[str, Any] | JSONResponse:
    """Parse and validate a JSON object body, returning 400 on failure."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError, UnicodeDecodeError):
        return _error_response("Invalid JSON body", "VALIDATION_ERROR", 400)
    if not isinstance(body, dict):
        return _error_response("Request body must be a JSON object", "VALIDATION_ERROR", 400)
    return body


def _validate_actor(value: Any) -> tuple[str, JSONResponse | None]:
    """Validate an actor name from JSON body.

    Returns (cleaned_actor, None) on success or ("", JSONResponse) on error.
    """
    cleaned, err = sanitize_actor(value)
    if err:
        return ("", _error_response(err, "VALIDATION_ERROR", 400))
    return (cleaned, None)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def create_router() -> APIRouter:
    """Build the APIRouter for all engine endpoints.

    NOTE: All handlers are intentionally async despite doing synchronous
    storage I/O. This serializes engine access on the event loop thread,
    avoiding concurrent multi-thread access to a shared SQLite connection.
    """
    router = APIRouter()

    # -- Workflows -----------------------------------------------------------

    @router.get("/workflows")
    async def api_workflows(engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse([wf.to_dict() for wf in engine.list_workflows()])

    @router.get("/workflows/{workflow_id}")
    async def api_workflow(workflow_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse(engine.get_workflow(workflow_id).to_dict())

    @router.post("/workflows")
    async def api_create_workflow(request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        replace = bool(body.pop("replace", False))
        wf = engine.create_workflow(body, replace=replace)
        return JSONResponse(wf.to_dict(), status_code=201)

    # -- Boards --------------------------------------------------------------

    @router.get("/boards")
    async def api_boards(engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse([b.to_dict() for b in engine.list_boards()])

    @router.post("/boards")
    async def api_create_board(request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        board = engine.create_board(
            body.get("name", ""),
            workflow_id=body.get("workflow_id"),
            description=body.get("description", ""),
            metadata=body.get("metadata"),
            board_id=body.get("id"),
        )
        return JSONResponse(board.to_dict(), status_code=201)

    @router.get("/boards/{board_id}")
    async def api_board(board_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse(engine.get_board(board_id).to_dict())

    @router.patch("/boards/{board_id}")
    async def api_update_board(board_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        return JSONResponse(engine.update_board(board_id, body).to_dict())

    @router.delete("/boards/{board_id}")
    async def api_delete_board(board_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        engine.delete_board(board_id)
        return JSONResponse({"deleted": board_id})

    @router.get("/boards/{board_id}/tickets")
    async def api_board_tickets(
        board_id: str,
        status: str | None = None,
        priority: str | None = None,
        assignee: str | None = None,
        label: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        engine: TicketEngine = Depends(_get_engine),
    ) -> JSONResponse:
        query = TicketQuery(
            board_id=board_id,
            status=status,
            priority=priority,
            assignee=assignee,
            label=label,
            limit=limit,
            offset=offset,
        )
        return JSONResponse([t.to_dict() for t in engine.list_tickets(query)])

    @router.post("/boards/{board_id}/tickets")
    async def api_create_ticket(board_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        if "board_id" in body:
            return _error_response("board_id is taken from the URL", "VALIDATION_ERROR", 400)
        actor, err = _validate_actor(body.pop("actor", "api"))
        if err:
            return err
        title = body.pop("title", "")
        ticket = engine.create_ticket(board_id, title, actor=actor, **body)
        return JSONResponse(ticket.to_dict(), status_code=201)

    @router.get("/boards/{board_id}/kanban")
    async def api_kanban(board_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse(engine.get_kanban_view(board_id))

    @router.get("/boards/{board_id}/backlog")
    async def api_backlog(board_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse([t.to_dict() for t in engine.get_backlog(board_id)])

    @router.get("/boards/{board_id}/search")
    async def api_search(
        board_id: str,
        q: str = "",
        limit: int | None = None,
        offset: int = 0,
        engine: TicketEngine = Depends(_get_engine),
    ) -> JSONResponse:
        tickets = engine.search(board_id, q, limit=limit, offset=offset)
        return JSONResponse([t.to_dict() for t in tickets])

    # -- CFD -----------------------------------------------------------------

    @router.post("/boards/{board_id}/snapshot")
    async def api_snapshot(board_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        counts = engine.take_snapshot(board_id, body.get("date"))
        return JSONResponse({"board_id": board_id, "counts": counts})

    @router.get("/boards/{board_id}/cfd")
    async def api_cfd(board_id: str, start: str, end: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse(engine.get_cfd_data(board_id, start, end))

    @router.post("/boards/{board_id}/cfd/backfill")
    async def api_backfill(board_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        if "start" not in body or "end" not in body:
            return _error_response("start and end are required", "VALIDATION_ERROR", 400)
        written = engine.backfill_snapshots(board_id, body["start"], body["end"])
        return JSONResponse({"board_id": board_id, "backfilled": written})

    # -- Tickets -------------------------------------------------------------

    @router.post("/tickets/batch")
    async def api_batch_update(request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        ids = body.get("ids")
        if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
            return _error_response("ids must be a JSON array of strings", "VALIDATION_ERROR", 400)
        updates = body.get("updates")
        if not isinstance(updates, dict):
            return _error_response("updates must be a JSON object", "VALIDATION_ERROR", 400)
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        updated, failed = engine.bulk_update_tickets(ids, updates, actor=actor)
        return JSONResponse(
            BatchUpdateResponse(
                succeeded=[t.to_dict() for t in updated],
                failed=failed,
                count=len(updated),
            )
        )

    @router.get("/tickets/{ticket_id}")
    async def api_ticket(ticket_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse(engine.get_ticket(ticket_id).to_dict())

    @router.patch("/tickets/{ticket_id}")
    async def api_update_ticket(ticket_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.pop("actor", "api"))
        if err:
            return err
        return JSONResponse(engine.update_ticket(ticket_id, body, actor=actor).to_dict())

    @router.delete("/tickets/{ticket_id}")
    async def api_delete_ticket(ticket_id: str, actor: str = "api", engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        engine.delete_ticket(ticket_id, actor=actor)
        return JSONResponse({"deleted": ticket_id})

    @router.post("/tickets/{ticket_id}/move")
    async def api_move_ticket(ticket_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        return JSONResponse(engine.move_ticket(ticket_id, body.get("status", ""), actor=actor).to_dict())

    @router.post("/tickets/{ticket_id}/assign")
    async def api_assign_ticket(ticket_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        return JSONResponse(engine.assign_ticket(ticket_id, body.get("assignees"), actor=actor).to_dict())

    @router.get("/tickets/{ticket_id}/transitions")
    async def api_transitions(ticket_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse(engine.get_valid_transitions(ticket_id))

    @router.get("/tickets/{ticket_id}/subtasks")
    async def api_subtasks(ticket_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse([t.to_dict() for t in engine.get_subtasks(ticket_id)])

    @router.post("/tickets/{ticket_id}/subtasks")
    async def api_create_subtask(ticket_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.pop("actor", "api"))
        if err:
            return err
        title = body.pop("title", "")
        ticket = engine.create_subtask(ticket_id, title, actor=actor, **body)
        return JSONResponse(ticket.to_dict(), status_code=201)

    @router.get("/tickets/{ticket_id}/activity")
    async def api_activity(
        ticket_id: str,
        limit: int = 50,
        newest_first: bool = False,
        engine: TicketEngine = Depends(_get_engine),
    ) -> JSONResponse:
        activities = engine.get_activity(ticket_id, limit=limit, newest_first=newest_first)
        return JSONResponse([a.to_dict() for a in activities])

    # -- Comments ------------------------------------------------------------

    @router.get("/tickets/{ticket_id}/comments")
    async def api_comments(ticket_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse([c.to_dict() for c in engine.list_comments(ticket_id)])

    @router.post("/tickets/{ticket_id}/comments")
    async def api_add_comment(ticket_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        author, err = _validate_actor(body.get("author", "api"))
        if err:
            return err
        parent_id = body.get("parent_id")
        if parent_id:
            comment = engine.reply_to_comment(ticket_id, parent_id, body.get("content", ""), author)
        else:
            comment = engine.add_comment(ticket_id, body.get("content", ""), author)
        return JSONResponse(comment.to_dict(), status_code=201)

    # -- Attachments ---------------------------------------------------------

    @router.get("/tickets/{ticket_id}/attachments")
    async def api_attachments(ticket_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse([a.to_dict() for a in engine.list_attachments(ticket_id)])

    @router.post("/tickets/{ticket_id}/attachments")
    async def api_add_attachment(ticket_id: str, request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        uploaded_by, err = _validate_actor(body.get("uploaded_by", "api"))
        if err:
            return err
        attachment = engine.add_attachment(
            ticket_id,
            filename=body.get("filename", ""),
            mime_type=body.get("mime_type", "application/octet-stream"),
            size_bytes=body.get("size_bytes", 0),
            storage_ref=body.get("storage_ref", ""),
            uploaded_by=uploaded_by,
            original_filename=body.get("original_filename"),
        )
        return JSONResponse(attachment.to_dict(), status_code=201)

    @router.delete("/attachments/{attachment_id}")
    async def api_delete_attachment(attachment_id: str, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        engine.delete_attachment(attachment_id)
        return JSONResponse({"deleted": attachment_id})

    # -- Interchange ---------------------------------------------------------

    @router.get("/export")
    async def api_export(engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        return JSONResponse(export_data(engine))

    @router.post("/import")
    async def api_import(request: Request, engine: TicketEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        return JSONResponse(import_data(engine, body))

    return router


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(engine: TicketEngine | None = None) -> FastAPI:
    """Create the FastAPI application. Passing *engine* replaces the module-level one."""
    global _engine
    if engine is not None:
        _engine = engine

    app = FastAPI(title="Trellis", docs_url=None, redoc_url=None)
    app.include_router(create_router(), prefix="/api")

    @app.exception_handler(TrellisError)
    async def _trellis_error_handler(request: Request, exc: TrellisError) -> JSONResponse:
        if isinstance(exc, StorageError):
            logger.error(
                "Storage failure",
                extra={"op": f"{request.method} {request.url.path}", "error": exc.code},
                exc_info=exc,
            )
        return _engine_error_response(exc)

    @app.middleware("http")
    async def _log_requests(request: Request, call_next: Any) -> Any:
        op = f"{request.method} {request.url.path}"
        t0 = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = round((time.monotonic() - t0) * 1000, 1)
            logger.exception("api_call", extra={"op": op, "duration_ms": duration_ms, "error": type(exc).__name__})
            raise
        duration_ms = round((time.monotonic() - t0) * 1000, 1)
        logger.debug("api_call", extra={"op": op, "args_data": dict(request.query_params), "duration_ms": duration_ms})
        return response

    return app


def main(port: int = DEFAULT_PORT, *, host: str = "127.0.0.1") -> None:
    """Serve the local project's engine over HTTP."""
    import uvicorn

    from trellis.core import DB_FILENAME, find_trellis_root, read_config
    from trellis.storage_memory import MemoryStorage
    from trellis.storage_sqlite import SQLiteStorage

    global _engine

    trellis_dir = find_trellis_root()
    config = read_config(trellis_dir)
    if config.get("storage") == "memory":
        storage: Any = MemoryStorage()
    else:
        # uvicorn runs the event loop on a worker thread, not the one that opened the DB.
        storage = SQLiteStorage(trellis_dir / DB_FILENAME, check_same_thread=False)
    _engine = TicketEngine(storage, default_workflow=config.get("default_workflow", "kanban"))
    _engine.initialize()

    app = create_app()
    logger.info("Serving %s on http://%s:%d", trellis_dir.parent, host, port)
    uvicorn.run(app, host=host, port=port, log_level="warning")
