"""Versioned wire format of the message handed to the analysis worker.

The worker is a separate deployable, so the payload is a plain JSON object::

    {
      "version": 1,
      "message_id": "6f0c...",
      "work_item_id": 42,
      "image_reference": "/var/uploads/6f0c.png",
      "enqueued_at": "2026-10-18T09:55:00+00:00"
    }

Consumers must reject a payload whose ``version`` they do not understand.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from image_taxonomy.errors import DescriptorError

DESCRIPTOR_VERSION = 1


@dataclass(frozen=True, slots=True)
class QueueDescriptor:
    """Minimal message referencing one work item."""

    message_id: str
    work_item_id: int
    image_reference: str
    enqueued_at: datetime
    version: int = DESCRIPTOR_VERSION

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "message_id": self.message_id,
                "work_item_id": self.work_item_id,
                "image_reference": self.image_reference,
                "enqueued_at": self.enqueued_at.isoformat(),
            },
            ensure_ascii=False,
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> QueueDescriptor:
        """Parse and validate a wire payload, raising ``DescriptorError``."""

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise DescriptorError(f"Descriptor is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise DescriptorError("Descriptor must be a JSON object.")

        version = payload.get("version")
        if version != DESCRIPTOR_VERSION:
            raise DescriptorError(f"Unsupported descriptor version: {version!r}")

        work_item_id = payload.get("work_item_id")
        if not isinstance(work_item_id, int) or isinstance(work_item_id, bool):
            raise DescriptorError(f"Invalid work_item_id: {work_item_id!r}")
        image_reference = payload.get("image_reference")
        if not isinstance(image_reference, str) or not image_reference:
            raise DescriptorError(f"Invalid image_reference: {image_reference!r}")
        message_id = payload.get("message_id")
        if not isinstance(message_id, str) or not message_id:
            raise DescriptorError(f"Invalid message_id: {message_id!r}")
        try:
            enqueued_at = datetime.fromisoformat(str(payload.get("enqueued_at")))
        except ValueError as error:
            raise DescriptorError(f"Invalid enqueued_at: {error}") from error

        return cls(
            message_id=message_id,
            work_item_id=work_item_id,
            image_reference=image_reference,
            enqueued_at=enqueued_at,
            version=version,
        )
