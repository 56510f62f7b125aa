"""Typed error hierarchy for trellis.

Every error carries a stable machine-readable ``code`` so presentation
layers (CLI, HTTP API) can map failures without string matching.
``NotFoundError`` is also a ``KeyError`` and ``ValidationError`` a
``ValueError`` so callers written against the builtin contracts keep working.
"""

from __future__ import annotations

from collections.abc import Iterable


class TrellisError(Exception):
    """Base class for every error raised by the engine."""

    code = "error"


class NotFoundError(TrellisError, KeyError):
    """A board, ticket, workflow, comment, attachment, or parent reference did not resolve."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message and wrap it in quotes.
        return str(self.args[0])


class ValidationError(TrellisError, ValueError):
    """Bad input: missing required field, malformed definition, unknown key."""

    code = "validation_error"


class InvalidTransitionError(ValidationError):
    """A status change not permitted by the board's workflow graph.

    ``allowed`` lists the legal targets from ``from_state`` in workflow order.
    An empty tuple means ``from_state`` is terminal.
    """

    code = "invalid_transition"

    def __init__(self, from_state: str, to_state: str, allowed: Iterable[str]) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = tuple(allowed)
        allowed_str = ", ".join(self.allowed) or "none"
        super().__init__(f"Invalid status transition: {from_state} -> {to_state}. Allowed: {allowed_str}")


class StorageError(TrellisError, RuntimeError):
    """Opaque failure raised by a storage backend. Not interpreted by the engine."""

    code = "storage_error"
