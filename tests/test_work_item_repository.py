from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from image_taxonomy.errors import InvalidTransition, NotFound, ValidationError
from image_taxonomy.items.models import WorkItemCreate, WorkItemStatus
from image_taxonomy.items.repository import WorkItemRepository

pytestmark = [
    allure.epic("Work Items"),
    allure.feature("Durable Store"),
]


def test_schema_is_migrated_to_head(repository: WorkItemRepository) -> None:
    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = {
            row[0]
            for row in connection.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'table'"),
            )
        }

    assert version == "20261018_0001"
    assert {"work_items", "work_item_events", "queue_messages"} <= tables


def test_init_schema_is_repeatable(repository: WorkItemRepository) -> None:
    repository.init_schema()
    repository.init_schema()


def test_create_starts_pending_with_empty_violations(
    repository: WorkItemRepository,
    image_file: Path,
) -> None:
    item = repository.create(
        WorkItemCreate(title="Cat", description="A cat", taxonomy="animals"),
        str(image_file),
    )

    assert item.id > 0
    assert item.status == WorkItemStatus.PENDING
    assert item.violations == {}
    assert item.error_message is None
    assert item.image_reference == str(image_file)
    assert item.created_at.tzinfo is not None
    assert repository.get(item.id) == item


def test_create_assigns_distinct_increasing_ids(make_item) -> None:
    ids = [make_item(f"item {index}").id for index in range(3)]

    assert ids == sorted(ids)
    assert len(set(ids)) == 3


@pytest.mark.parametrize("reference", [None, ""])
def test_create_without_image_is_rejected(
    repository: WorkItemRepository,
    reference: str | None,
) -> None:
    with pytest.raises(ValidationError) as excinfo:
        repository.create(WorkItemCreate(title="No image"), reference)

    assert "image" in excinfo.value.field_errors
    assert repository.list_items() == []


def test_create_with_unreadable_or_empty_image_is_rejected(
    repository: WorkItemRepository,
    tmp_path: Path,
) -> None:
    empty = tmp_path / "empty.png"
    empty.write_bytes(b"")

    with pytest.raises(ValidationError, match="required"):
        repository.create(WorkItemCreate(), None)
    with pytest.raises(ValidationError, match="image"):
        repository.create(WorkItemCreate(), str(tmp_path / "missing.png"))
    with pytest.raises(ValidationError, match="empty"):
        repository.create(WorkItemCreate(), str(empty))
    assert repository.list_items() == []


def test_get_unknown_id_raises_not_found(repository: WorkItemRepository) -> None:
    with pytest.raises(NotFound) as excinfo:
        repository.get(9999)

    assert excinfo.value.work_item_id == 9999


def test_update_status_writes_result_with_terminal_status(
    repository: WorkItemRepository,
    make_item,
) -> None:
    item = make_item("original")
    repository.update_status(item.id, WorkItemStatus.PROCESSING)

    updated = repository.update_status(
        item.id,
        WorkItemStatus.COMPLETE,
        {"violations": {"nudity": 0.02, "violence": 0.9}},
    )

    assert updated.status == WorkItemStatus.COMPLETE
    assert updated.violations == {"nudity": 0.02, "violence": 0.9}
    assert updated.title == "original"
    assert updated.updated_at >= item.updated_at
    assert repository.get(item.id) == updated


def test_update_status_can_skip_processing(repository: WorkItemRepository, make_item) -> None:
    item = make_item()

    updated = repository.update_status(
        item.id,
        WorkItemStatus.FAILED,
        {"error_message": "decoder crashed"},
    )

    assert updated.status == WorkItemStatus.FAILED
    assert updated.error_message == "decoder crashed"
    assert updated.violations == {}


@pytest.mark.parametrize(
    ("path", "illegal"),
    [
        ([], WorkItemStatus.PENDING),
        ([WorkItemStatus.PROCESSING], WorkItemStatus.PENDING),
        ([WorkItemStatus.PROCESSING], WorkItemStatus.PROCESSING),
        ([WorkItemStatus.COMPLETE], WorkItemStatus.PROCESSING),
        ([WorkItemStatus.COMPLETE], WorkItemStatus.FAILED),
        ([WorkItemStatus.FAILED], WorkItemStatus.PENDING),
        ([WorkItemStatus.FAILED], WorkItemStatus.COMPLETE),
    ],
)
def test_illegal_transition_leaves_item_unchanged(
    repository: WorkItemRepository,
    make_item,
    path: list[WorkItemStatus],
    illegal: WorkItemStatus,
) -> None:
    item = make_item()
    for status in path:
        repository.update_status(item.id, status)
    before = repository.get(item.id)

    with pytest.raises(InvalidTransition):
        repository.update_status(item.id, illegal, None)

    assert repository.get(item.id) == before


def test_repeated_terminal_write_is_a_no_op(
    repository: WorkItemRepository,
    make_item,
) -> None:
    item = make_item()
    payload = {"violations": {"spam": 0.1}}
    first = repository.update_status(item.id, WorkItemStatus.COMPLETE, payload)

    second = repository.update_status(item.id, WorkItemStatus.COMPLETE, dict(payload))

    assert second == first
    assert repository.get(item.id) == first
    events = repository.get_details(item.id).events
    assert [event.event_type for event in events].count("status_changed") == 1


def test_second_terminal_write_does_not_change_stored_result(
    repository: WorkItemRepository,
    make_item,
) -> None:
    item = make_item()
    first = repository.update_status(
        item.id,
        WorkItemStatus.COMPLETE,
        {"violations": {"spam": 0.1}},
    )

    with pytest.raises(InvalidTransition):
        repository.update_status(item.id, WorkItemStatus.COMPLETE, {"violations": {"spam": 0.7}})

    assert repository.get(item.id) == first


def test_update_status_unknown_id_raises_not_found(repository: WorkItemRepository) -> None:
    with pytest.raises(NotFound):
        repository.update_status(42, WorkItemStatus.PROCESSING)


def test_result_payload_requires_terminal_status(
    repository: WorkItemRepository,
    make_item,
) -> None:
    item = make_item()

    with pytest.raises(ValidationError, match="terminal"):
        repository.update_status(item.id, WorkItemStatus.PROCESSING, {"violations": {}})
    with pytest.raises(ValidationError, match="Unsupported result keys"):
        repository.update_status(item.id, WorkItemStatus.COMPLETE, {"score": 1})
    with pytest.raises(ValidationError, match="object"):
        repository.update_status(item.id, WorkItemStatus.COMPLETE, {"violations": [1, 2]})

    assert repository.get(item.id).status == WorkItemStatus.PENDING


def test_result_payload_cannot_overwrite_producer_metadata(
    repository: WorkItemRepository,
    make_item,
) -> None:
    item = make_item("mine")

    for key in ("title", "description", "taxonomy"):
        with pytest.raises(ValidationError, match="Unsupported result keys"):
            repository.update_status(
                item.id,
                WorkItemStatus.COMPLETE,
                {"violations": {}, key: "from worker"},
            )

    stored = repository.get(item.id)
    assert stored.status == WorkItemStatus.PENDING
    assert stored.title == "mine"


def test_concurrent_terminal_writes_have_one_winner(db_path: Path, make_item) -> None:
    item = make_item()
    barrier = threading.Barrier(2)
    outcomes: dict[str, str] = {}

    def _write(status: WorkItemStatus) -> None:
        repo = WorkItemRepository(db_path)
        try:
            barrier.wait(timeout=5)
            repo.update_status(item.id, status, {"error_message": f"by {status.value}"})
            outcomes[status.value] = "ok"
        except InvalidTransition:
            outcomes[status.value] = "rejected"
        finally:
            repo.close()

    threads = [
        threading.Thread(target=_write, args=(status,))
        for status in (WorkItemStatus.COMPLETE, WorkItemStatus.FAILED)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(outcomes.values()) == ["ok", "rejected"]
    winner = next(status for status, outcome in outcomes.items() if outcome == "ok")
    stored = WorkItemRepository(db_path)
    try:
        final = stored.get(item.id)
    finally:
        stored.close()
    assert final.status.value == winner
    assert final.error_message == f"by {winner}"


def test_events_record_every_accepted_mutation(
    repository: WorkItemRepository,
    make_item,
) -> None:
    item = make_item()
    repository.record_event(
        work_item_id=item.id,
        event_type="enqueued",
        details={"message_id": "m-1"},
    )
    repository.update_status(item.id, WorkItemStatus.PROCESSING)
    repository.update_status(item.id, WorkItemStatus.COMPLETE, {"violations": {"x": 1}})
    with pytest.raises(InvalidTransition):
        repository.update_status(item.id, WorkItemStatus.FAILED)

    details = repository.get_details(item.id)

    assert [event.event_type for event in details.events] == [
        "created",
        "enqueued",
        "status_changed",
        "status_changed",
    ]
    assert details.events[1].details == {"message_id": "m-1"}
    assert details.events[2].status_from == WorkItemStatus.PENDING
    assert details.events[2].status_to == WorkItemStatus.PROCESSING
    assert details.events[3].details == {"result_keys": ["violations"]}
    assert details.item.status == WorkItemStatus.COMPLETE


def test_record_event_unknown_item_raises_not_found(repository: WorkItemRepository) -> None:
    with pytest.raises(NotFound):
        repository.record_event(work_item_id=7, event_type="enqueued", details={})


def test_list_items_filters_by_status_newest_first(
    repository: WorkItemRepository,
    make_item,
) -> None:
    first = make_item("first")
    second = make_item("second")
    repository.update_status(first.id, WorkItemStatus.FAILED)

    assert [item.id for item in repository.list_items()] == [second.id, first.id]
    assert [item.id for item in repository.list_items(status=WorkItemStatus.FAILED)] == [first.id]
    assert [item.id for item in repository.list_items(limit=1)] == [second.id]


def test_list_stuck_reports_only_non_terminal_items(
    repository: WorkItemRepository,
    make_item,
) -> None:
    pending = make_item("pending")
    processing = make_item("processing")
    done = make_item("done")
    repository.update_status(processing.id, WorkItemStatus.PROCESSING)
    repository.update_status(done.id, WorkItemStatus.COMPLETE)

    stuck = repository.list_stuck(older_than=timedelta(0))

    assert {item.id for item in stuck} == {pending.id, processing.id}
    assert repository.list_stuck(older_than=timedelta(hours=1)) == []
    assert [
        item.id
        for item in repository.list_stuck(
            older_than=timedelta(0),
            statuses=(WorkItemStatus.PROCESSING,),
        )
    ] == [processing.id]
