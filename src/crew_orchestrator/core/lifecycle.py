"""Task status transitions."""

from crew_orchestrator.core.errors import InvalidTransition

TASK_STATUSES = ("inbox", "planned", "in_progress", "review", "done", "pending", "cancelled")

# event -> {from_status: to_status}
TRANSITIONS: dict[str, dict[str, str]] = {
    "run": {"inbox": "in_progress", "planned": "in_progress"},
    "pause": {"in_progress": "pending"},
    "cancel": {"in_progress": "cancelled"},
    "resume": {"pending": "in_progress", "cancelled": "in_progress"},
    "complete": {"in_progress": "review"},
    "fail": {"in_progress": "pending"},
    "merge": {"review": "done"},
    "approve": {"review": "done"},
    "assign": {s: ("planned" if s == "inbox" else s) for s in TASK_STATUSES if s != "in_progress"},
    "discard": {s: s for s in TASK_STATUSES if s != "in_progress"},
}


def next_status(status: str, event: str) -> str:
    """Return the status ``event`` moves a task in ``status`` to.

    Raises InvalidTransition for pairs outside the table.
    """
    table = TRANSITIONS.get(event)
    if table is None:
        raise InvalidTransition(f"Unknown event: {event}")
    if status not in table:
        raise InvalidTransition(f"Cannot {event} a task in status '{status}'")
    return table[status]


def can_delete(status: str) -> bool:
    return status != "in_progress"
