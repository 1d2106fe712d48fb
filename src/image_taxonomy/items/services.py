"""Producer-side submission flow: validate, stage, commit, then enqueue."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePath
from uuid import uuid4

from image_taxonomy.errors import EnqueueError, ValidationError
from image_taxonomy.items.models import WorkItemCreate, WorkItemStatus, WorkItemView
from image_taxonomy.items.repository import WorkItemRepository
from image_taxonomy.queue.client import QueueClient
from image_taxonomy.queue.descriptor import QueueDescriptor

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 255


@dataclass(slots=True)
class SubmissionRequest:
    """Descriptive metadata plus the uploaded image."""

    image_bytes: bytes | None
    filename: str | None
    content_type: str | None = None
    title: str | None = None
    description: str | None = None
    taxonomy: str | None = None


@dataclass(slots=True)
class SubmissionResult:
    """Created work item and the descriptor published for it."""

    item: WorkItemView
    descriptor: QueueDescriptor


class SubmissionService:
    """Creates work items and hands them to the analysis queue."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WorkItemRepository,
        queue: QueueClient,
        upload_dir: Path,
        max_upload_bytes: int = 20 * 1024 * 1024,
        allowed_content_types: tuple[str, ...] = (),
        on_enqueue_failure: str = "leave_pending",
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.upload_dir = upload_dir
        self.max_upload_bytes = max_upload_bytes
        self.allowed_content_types = allowed_content_types
        self.on_enqueue_failure = on_enqueue_failure

    def submit(self, request: SubmissionRequest) -> SubmissionResult:
        """Create one work item and publish exactly one descriptor for it.

        Raises ``ValidationError`` before anything is written when the input is
        unusable, and ``EnqueueError`` (carrying the created item id) when the
        item was committed but the queue could not be reached.
        """

        image_bytes = self._validate(request)

        image_path = self._stage_image(image_bytes, filename=request.filename)
        metadata = WorkItemCreate(
            title=_clean(request.title) or _default_title(request.filename),
            description=_clean(request.description),
            taxonomy=_clean(request.taxonomy),
        )
        try:
            item = self.repository.create(metadata, str(image_path))
        except Exception:
            image_path.unlink(missing_ok=True)
            raise

        try:
            descriptor = self.queue.enqueue(item.id, item.image_reference)
        except EnqueueError as error:
            self._handle_enqueue_failure(item=item, error=error)
            raise EnqueueError(str(error), work_item_id=item.id) from error

        self.repository.record_event(
            work_item_id=item.id,
            event_type="enqueued",
            details={"message_id": descriptor.message_id},
        )
        return SubmissionResult(item=item, descriptor=descriptor)

    def _validate(self, request: SubmissionRequest) -> bytes:
        errors: dict[str, str] = {}
        image_bytes = request.image_bytes or b""
        if not image_bytes or not request.filename:
            errors["image"] = "An image is required."
        elif len(image_bytes) > self.max_upload_bytes:
            errors["image"] = f"Image exceeds the {self.max_upload_bytes} byte upload limit."
        elif (
            self.allowed_content_types
            and request.content_type
            and request.content_type.lower() not in self.allowed_content_types
        ):
            errors["image"] = f"Unsupported image type: {request.content_type}."

        title = _clean(request.title)
        if title is not None and len(title) > MAX_TITLE_CHARS:
            errors["title"] = f"Title must be at most {MAX_TITLE_CHARS} characters."
        if errors:
            raise ValidationError(errors)
        return image_bytes

    def _stage_image(self, image_bytes: bytes, *, filename: str | None) -> Path:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        suffix = PurePath(filename or "").suffix.lower()[:16]
        path = (self.upload_dir / f"{uuid4().hex}{suffix}").resolve()
        with path.open("wb") as handle:
            handle.write(image_bytes)
            handle.flush()
            os.fsync(handle.fileno())
        return path

    def _handle_enqueue_failure(self, *, item: WorkItemView, error: EnqueueError) -> None:
        logger.warning("Enqueue failed for work item %s: %s", item.id, error)
        self.repository.record_event(
            work_item_id=item.id,
            event_type="enqueue_failed",
            details={"error": str(error), "policy": self.on_enqueue_failure},
        )
        if self.on_enqueue_failure == "mark_failed":
            self.repository.update_status(
                item.id,
                WorkItemStatus.FAILED,
                {"error_message": f"Analysis could not be started: {error}"},
            )


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _default_title(filename: str | None) -> str | None:
    if not filename:
        return None
    return PurePath(filename).stem or None
