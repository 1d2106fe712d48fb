from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from image_taxonomy.errors import DescriptorError, EnqueueError
from image_taxonomy.queue import QueueDescriptor, SqliteQueueClient

pytestmark = [
    allure.epic("Job Handoff"),
    allure.feature("Durable Queue"),
]


def test_enqueue_then_claim_returns_descriptor_payload(queue: SqliteQueueClient) -> None:
    descriptor = queue.enqueue(7, "/uploads/a.png")

    claimed = queue.claim(worker_id="w1", lease_seconds=60)

    assert claimed is not None
    assert claimed.message_id == descriptor.message_id
    assert claimed.deliveries == 1
    parsed = QueueDescriptor.from_json(claimed.payload)
    assert parsed == descriptor
    assert queue.claim(worker_id="w2", lease_seconds=60) is None


def test_claim_order_is_first_in_first_out(queue: SqliteQueueClient) -> None:
    first = queue.enqueue(1, "/uploads/1.png")
    second = queue.enqueue(2, "/uploads/2.png")

    claimed = [queue.claim(worker_id="w", lease_seconds=60) for _ in range(2)]

    assert [message.message_id for message in claimed if message] == [
        first.message_id,
        second.message_id,
    ]


def test_ack_finishes_message(queue: SqliteQueueClient) -> None:
    queue.enqueue(1, "/uploads/1.png")
    claimed = queue.claim(worker_id="w", lease_seconds=60)
    assert claimed is not None

    assert queue.ack(claimed.message_id, worker_id="w") is True
    assert queue.ack(claimed.message_id, worker_id="w") is False
    assert queue.stats() == {"ready": 0, "leased": 0, "done": 1, "dead": 0}


def test_expired_lease_is_redelivered(queue: SqliteQueueClient) -> None:
    descriptor = queue.enqueue(3, "/uploads/3.png")
    first = queue.claim(worker_id="crashed", lease_seconds=0)
    assert first is not None

    second = queue.claim(worker_id="w2", lease_seconds=60)

    assert second is not None
    assert second.message_id == descriptor.message_id
    assert second.deliveries == 2


def test_worker_with_reclaimed_lease_cannot_finish_message(queue: SqliteQueueClient) -> None:
    queue.enqueue(8, "/uploads/8.png")
    stale = queue.claim(worker_id="slow", lease_seconds=0)
    assert stale is not None
    current = queue.claim(worker_id="fast", lease_seconds=60)
    assert current is not None
    assert current.worker_id == "fast"

    assert queue.ack(stale.message_id, worker_id="slow") is False
    assert queue.dead_letter(stale.message_id, "late", worker_id="slow") is False
    assert (
        queue.release(stale.message_id, worker_id="slow", delay_seconds=0, error="late") is False
    )
    assert queue.stats()["leased"] == 1
    assert queue.ack(current.message_id, worker_id="fast") is True


def test_release_makes_message_claimable_after_delay(queue: SqliteQueueClient) -> None:
    queue.enqueue(4, "/uploads/4.png")
    claimed = queue.claim(worker_id="w", lease_seconds=60)
    assert claimed is not None

    released = queue.release(
        claimed.message_id,
        worker_id="w",
        delay_seconds=3600,
        error="image missing",
    )
    assert released is True
    assert queue.claim(worker_id="w", lease_seconds=60) is None
    assert queue.stats()["ready"] == 1


def test_release_without_delay_redelivers_immediately(queue: SqliteQueueClient) -> None:
    queue.enqueue(5, "/uploads/5.png")
    claimed = queue.claim(worker_id="w", lease_seconds=60)
    assert claimed is not None
    queue.release(claimed.message_id, worker_id="w", delay_seconds=0, error="transient")

    again = queue.claim(worker_id="w", lease_seconds=60)

    assert again is not None
    assert again.deliveries == 2


def test_dead_letter_is_never_redelivered(queue: SqliteQueueClient) -> None:
    queue.enqueue(6, "/uploads/6.png")
    claimed = queue.claim(worker_id="w", lease_seconds=0)
    assert claimed is not None

    assert queue.dead_letter(claimed.message_id, "bad payload", worker_id="w") is True
    assert queue.claim(worker_id="w", lease_seconds=60) is None
    assert queue.stats()["dead"] == 1


def test_queues_are_isolated_by_name(db_path: Path, queue: SqliteQueueClient) -> None:
    other = SqliteQueueClient(db_path, queue_name="queue:default")
    try:
        other.enqueue(1, "/uploads/1.png")

        assert queue.claim(worker_id="w", lease_seconds=60) is None
        assert other.claim(worker_id="w", lease_seconds=60) is not None
    finally:
        other.close()


def test_enqueue_to_unreachable_store_raises_enqueue_error(tmp_path: Path) -> None:
    client = SqliteQueueClient(tmp_path / "missing-dir" / "queue.db")
    try:
        with pytest.raises(EnqueueError) as excinfo:
            client.enqueue(11, "/uploads/11.png")
    finally:
        client.close()

    assert excinfo.value.work_item_id == 11


def test_enqueue_without_schema_raises_enqueue_error(tmp_path: Path) -> None:
    client = SqliteQueueClient(tmp_path / "bare.db")
    try:
        with pytest.raises(EnqueueError, match="unreachable"):
            client.enqueue(12, "/uploads/12.png")
    finally:
        client.close()


def test_descriptor_json_is_versioned_and_minimal() -> None:
    descriptor = QueueDescriptor(
        message_id="m-1",
        work_item_id=5,
        image_reference="/uploads/5.png",
        enqueued_at=datetime(2026, 10, 18, 9, 55, tzinfo=UTC),
    )

    payload = json.loads(descriptor.to_json())

    assert payload == {
        "version": 1,
        "message_id": "m-1",
        "work_item_id": 5,
        "image_reference": "/uploads/5.png",
        "enqueued_at": "2026-10-18T09:55:00+00:00",
    }


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("not json", "valid JSON"),
        ("[1, 2]", "JSON object"),
        (
            '{"version": 2, "message_id": "m", "work_item_id": 1, '
            '"image_reference": "/a", "enqueued_at": "2026-10-18T00:00:00+00:00"}',
            "version",
        ),
        (
            '{"version": 1, "message_id": "m", "work_item_id": "1", '
            '"image_reference": "/a", "enqueued_at": "2026-10-18T00:00:00+00:00"}',
            "work_item_id",
        ),
        (
            '{"version": 1, "message_id": "m", "work_item_id": true, '
            '"image_reference": "/a", "enqueued_at": "2026-10-18T00:00:00+00:00"}',
            "work_item_id",
        ),
        (
            '{"version": 1, "message_id": "m", "work_item_id": 1, '
            '"image_reference": "", "enqueued_at": "2026-10-18T00:00:00+00:00"}',
            "image_reference",
        ),
        (
            '{"version": 1, "message_id": "m", "work_item_id": 1, '
            '"image_reference": "/a", "enqueued_at": "yesterday"}',
            "enqueued_at",
        ),
    ],
)
def test_descriptor_rejects_malformed_payloads(raw: str, message: str) -> None:
    with pytest.raises(DescriptorError, match=message):
        QueueDescriptor.from_json(raw)
