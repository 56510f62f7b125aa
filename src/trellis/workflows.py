# src/trellis/workflows.py
"""Workflow registry -- parsing, strict validation, and caching.

Workflows are directed graphs of named states. Built-in presets are seeded
by each storage adapter on ``init()``; user-defined workflows are persisted
through the same adapter. The registry validates definitions at creation so
a bad transition table is rejected up front instead of surfacing later as a
runtime transition failure.
"""

from __future__ import annotations

import logging
import unicodedata
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from trellis.errors import NotFoundError, ValidationError
from trellis.models import Workflow
from trellis.storage import TicketQuery

if TYPE_CHECKING:
    from trellis.storage import StorageAdapter

logger = logging.getLogger(__name__)

MAX_STATE_NAME_LENGTH = 64
MAX_STATES = 50
MAX_TRANSITIONS = 200


def _check_state_name(wf_id: str, name: Any) -> None:
    """State names are opaque tokens: any non-blank text without control characters."""
    problem = None
    if not isinstance(name, str) or not name.strip():
        problem = "must be a non-empty string"
    elif name != name.strip():
        problem = "must not have leading or trailing whitespace"
    elif len(name) > MAX_STATE_NAME_LENGTH:
        problem = f"must be at most {MAX_STATE_NAME_LENGTH} characters"
    elif any(unicodedata.category(ch).startswith("C") for ch in name):
        problem = "must not contain control characters"
    if problem:
        msg = f"Workflow '{wf_id}': invalid state name {name!r}: {problem}"
        raise ValidationError(msg)


def parse_workflow(raw: Mapping[str, Any], *, is_builtin: bool = False) -> Workflow:
    """Parse and validate a workflow definition dict.

    Raises:
        ValidationError: If the definition is malformed, empty, references
            undeclared states, or exceeds size limits.
    """
    if not isinstance(raw, Mapping):
        msg = f"Workflow definition must be a mapping, got {type(raw).__name__}"
        raise ValidationError(msg)

    wf_id = raw.get("id")
    if not isinstance(wf_id, str) or not wf_id.strip():
        msg = "Workflow id is required"
        raise ValidationError(msg)
    wf_id = wf_id.strip()

    name = raw.get("name") or wf_id
    if not isinstance(name, str):
        msg = f"Workflow '{wf_id}': name must be a string"
        raise ValidationError(msg)

    raw_states = raw.get("states")
    if not isinstance(raw_states, (list, tuple)) or not raw_states:
        msg = f"Workflow '{wf_id}': states must be a non-empty list"
        raise ValidationError(msg)
    if len(raw_states) > MAX_STATES:
        msg = f"Workflow '{wf_id}' has {len(raw_states)} states (max {MAX_STATES})"
        raise ValidationError(msg)

    states: list[str] = []
    for s in raw_states:
        _check_state_name(wf_id, s)
        if s in states:
            msg = f"Workflow '{wf_id}': duplicate state name '{s}'"
            raise ValidationError(msg)
        states.append(s)
    declared = set(states)

    raw_transitions = raw.get("transitions") or {}
    if not isinstance(raw_transitions, Mapping):
        msg = f"Workflow '{wf_id}': transitions must be a mapping of state -> list of states"
        raise ValidationError(msg)

    errors: list[str] = []
    edge_count = 0
    transitions: dict[str, tuple[str, ...]] = {}
    for source, targets in raw_transitions.items():
        if source not in declared:
            errors.append(f"transition source '{source}' is not a declared state")
            continue
        if isinstance(targets, str) or not isinstance(targets, (list, tuple)):
            errors.append(f"targets of '{source}' must be a list")
            continue
        cleaned: list[str] = []
        for target in targets:
            if target not in declared:
                errors.append(f"transition {source}->{target} targets an undeclared state")
            elif target not in cleaned:
                cleaned.append(target)
        edge_count += len(cleaned)
        transitions[source] = tuple(cleaned)
    if errors:
        msg = f"Workflow '{wf_id}' is invalid: {'; '.join(errors)}"
        raise ValidationError(msg)
    if edge_count > MAX_TRANSITIONS:
        msg = f"Workflow '{wf_id}' has {edge_count} transitions (max {MAX_TRANSITIONS})"
        raise ValidationError(msg)

    # States absent from the table are terminal.
    for s in states:
        transitions.setdefault(s, ())
    ordered = {s: transitions[s] for s in states}

    initial_state = raw.get("initial_state") or states[0]
    if initial_state not in declared:
        msg = f"Workflow '{wf_id}': initial_state '{initial_state}' is not in states list"
        raise ValidationError(msg)

    return Workflow(
        id=wf_id,
        name=name,
        states=tuple(states),
        initial_state=initial_state,
        transitions=ordered,
        is_builtin=is_builtin,
    )


def builtin_workflows() -> list[Workflow]:
    """Parse every built-in preset. Used by storage adapters when seeding."""
    from trellis.workflows_data import BUILT_IN_WORKFLOWS

    return [parse_workflow(data, is_builtin=True) for data in BUILT_IN_WORKFLOWS.values()]


class WorkflowRegistry:
    """Resolves, creates, and lists workflows through a storage adapter.

    Lookups are cached per registry; ``create()`` refreshes the cache entry
    it writes. Redefinition policy: an existing id is rejected unless
    ``replace=True``, and built-in workflows can never be replaced.
    """

    def __init__(self, storage: StorageAdapter) -> None:
        self._storage = storage
        self._cache: dict[str, Workflow] = {}

    def get(self, workflow_id: str) -> Workflow:
        cached = self._cache.get(workflow_id)
        if cached is not None:
            return cached
        wf = self._storage.get_workflow(workflow_id)
        if wf is None:
            raise NotFoundError("workflow", workflow_id)
        self._cache[workflow_id] = wf
        return wf

    def exists(self, workflow_id: str) -> bool:
        try:
            self.get(workflow_id)
        except NotFoundError:
            return False
        return True

    def list(self) -> list[Workflow]:
        workflows = self._storage.list_workflows()
        for wf in workflows:
            self._cache[wf.id] = wf
        return workflows

    def create(self, definition: Mapping[str, Any], *, replace: bool = False) -> Workflow:
        wf = parse_workflow(definition)
        existing = self._storage.get_workflow(wf.id)
        if existing is not None:
            if existing.is_builtin:
                msg = f"Workflow '{wf.id}' is built-in and cannot be redefined"
                raise ValidationError(msg)
            if not replace:
                msg = f"Workflow '{wf.id}' already exists. Pass replace=True to redefine it."
                raise ValidationError(msg)
            self._check_states_in_use(existing, wf)

        saved = self._storage.save_workflow(wf)
        self._cache[saved.id] = saved
        logger.info("Workflow %s: %s (%d states)", "replaced" if existing else "created", saved.id, len(saved.states))
        return saved

    def _check_states_in_use(self, old: Workflow, new: Workflow) -> None:
        """Reject a redefinition that would strand tickets in a removed state."""
        removed = set(old.states) - set(new.states)
        if not removed:
            return
        for board in self._storage.list_boards():
            if board.workflow_id != old.id:
                continue
            for status in sorted(removed):
                if self._storage.list_tickets(TicketQuery(board_id=board.id, status=status, limit=1)):
                    msg = f"Cannot redefine workflow '{old.id}': board '{board.id}' still has tickets in removed state '{status}'"
                    raise ValidationError(msg)
