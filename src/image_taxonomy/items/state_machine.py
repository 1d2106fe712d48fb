"""Legal work item status transitions."""

from __future__ import annotations

from image_taxonomy.errors import InvalidTransition
from image_taxonomy.items.models import WorkItemStatus

INITIAL_STATUS = WorkItemStatus.PENDING
TERMINAL_STATUSES = frozenset({WorkItemStatus.COMPLETE, WorkItemStatus.FAILED})

# pending -> processing is optional; a worker may go straight to a terminal state.
ALLOWED_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.PENDING: frozenset(
        {WorkItemStatus.PROCESSING, WorkItemStatus.COMPLETE, WorkItemStatus.FAILED},
    ),
    WorkItemStatus.PROCESSING: frozenset({WorkItemStatus.COMPLETE, WorkItemStatus.FAILED}),
    WorkItemStatus.COMPLETE: frozenset(),
    WorkItemStatus.FAILED: frozenset(),
}


def is_terminal(status: WorkItemStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: WorkItemStatus, new: WorkItemStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: WorkItemStatus, new: WorkItemStatus) -> None:
    """Raise ``InvalidTransition`` unless ``current -> new`` is allowed."""

    if not can_transition(current, new):
        raise InvalidTransition(current.value, new.value)
