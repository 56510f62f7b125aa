"""Query-string parser for ticket search.

``status:todo priority:high login bug`` becomes a ``TicketQuery`` with the
structured filters set and ``search="login bug"``. Recognised keys are
``status``, ``priority``, ``assignee`` and ``label``; when a key repeats the
last occurrence wins. Any other token, including ``key:value`` pairs with an
unknown key or an empty value, is free text.
"""

from __future__ import annotations

from trellis.storage import TicketQuery

STRUCTURED_KEYS: frozenset[str] = frozenset({"status", "priority", "assignee", "label"})


def split_query(text: str) -> tuple[dict[str, str], str]:
    """Split *text* into (structured filters, free text)."""
    filters: dict[str, str] = {}
    words: list[str] = []
    for token in text.split():
        key, sep, value = token.partition(":")
        if sep and key in STRUCTURED_KEYS and value:
            filters[key] = value
        else:
            words.append(token)
    return filters, " ".join(words)


def parse_query(
    text: str,
    *,
    board_id: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> TicketQuery:
    filters, free_text = split_query(text)
    return TicketQuery(
        board_id=board_id,
        status=filters.get("status"),
        priority=filters.get("priority"),
        assignee=filters.get("assignee"),
        label=filters.get("label"),
        search=free_text or None,
        limit=limit,
        offset=offset,
    )
