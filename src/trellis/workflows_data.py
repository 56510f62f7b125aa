# src/trellis/workflows_data.py
"""Built-in workflow presets.

Logic lives in workflows.py; this file is pure data. Each preset is a
JSON-compatible dict in the same shape accepted by
``WorkflowRegistry.create()``. The first state is the initial state.
"""

from __future__ import annotations

from typing import Any

DEFAULT_WORKFLOW_ID = "kanban"

BUILT_IN_WORKFLOWS: dict[str, dict[str, Any]] = {
    "kanban": {
        "id": "kanban",
        "name": "Kanban",
        "states": ["backlog", "todo", "in_progress", "review", "done"],
        "initial_state": "backlog",
        "transitions": {
            "backlog": ["todo"],
            "todo": ["backlog", "in_progress"],
            "in_progress": ["todo", "review"],
            "review": ["in_progress", "done"],
            "done": ["review"],
        },
    },
    "scrum": {
        "id": "scrum",
        "name": "Scrum",
        "states": ["backlog", "sprint_backlog", "in_progress", "testing", "done"],
        "initial_state": "backlog",
        "transitions": {
            "backlog": ["sprint_backlog"],
            "sprint_backlog": ["backlog", "in_progress"],
            "in_progress": ["sprint_backlog", "testing"],
            "testing": ["in_progress", "done"],
            "done": ["testing"],
        },
    },
    "support": {
        "id": "support",
        "name": "Support",
        "states": ["new", "open", "pending", "on_hold", "solved", "closed"],
        "initial_state": "new",
        "transitions": {
            "new": ["open"],
            "open": ["pending", "on_hold", "solved"],
            "pending": ["open", "solved"],
            "on_hold": ["open"],
            "solved": ["open", "closed"],
            "closed": [],
        },
    },
    "simple": {
        "id": "simple",
        "name": "Simple",
        "states": ["todo", "doing", "done"],
        "initial_state": "todo",
        "transitions": {
            "todo": ["doing"],
            "doing": ["todo", "done"],
            "done": ["doing"],
        },
    },
}
