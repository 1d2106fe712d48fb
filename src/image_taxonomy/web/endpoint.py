"""Status view served to the client poller."""

from __future__ import annotations

from dataclasses import dataclass

from image_taxonomy.items.models import WorkItemStatus
from image_taxonomy.items.repository import WorkItemRepository
from image_taxonomy.items.state_machine import is_terminal
from image_taxonomy.web.contracts import STREAM_MEDIA_TYPE
from image_taxonomy.web.render import render_stream_message


@dataclass(frozen=True, slots=True)
class RenderedFragment:
    """Partial-update body for one work item."""

    work_item_id: int
    status: WorkItemStatus
    terminal: bool
    body: str
    media_type: str = STREAM_MEDIA_TYPE


def get_status_view(repository: WorkItemRepository, work_item_id: int) -> RenderedFragment:
    """Render the current status of one item; a pure read.

    Raises ``NotFound`` for unknown identifiers, which pollers should treat as
    a reason to stop rather than retry.
    """

    item = repository.get(work_item_id)
    return RenderedFragment(
        work_item_id=item.id,
        status=item.status,
        terminal=is_terminal(item.status),
        body=render_stream_message(item),
    )
