"""Domain models for work items."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class WorkItemStatus(str, Enum):
    """Work item lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


# Worker write-back never touches producer metadata.
RESULT_PAYLOAD_KEYS = ("violations", "error_message")


@dataclass(slots=True)
class WorkItemCreate:
    """Producer-supplied descriptive metadata."""

    title: str | None = None
    description: str | None = None
    taxonomy: str | None = None


@dataclass(slots=True)
class WorkItemView:
    """Readable work item snapshot."""

    id: int
    title: str | None
    description: str | None
    taxonomy: str | None
    status: WorkItemStatus
    violations: dict[str, Any]
    error_message: str | None
    image_reference: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class WorkItemEventView:
    """Audit trail entry for one accepted mutation."""

    event_id: int
    work_item_id: int
    event_type: str
    status_from: WorkItemStatus | None
    status_to: WorkItemStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkItemDetails:
    """Work item with its event stream."""

    item: WorkItemView
    events: list[WorkItemEventView]
