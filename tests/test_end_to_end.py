from __future__ import annotations

from collections.abc import Iterator

import allure
import pytest
from fastapi.testclient import TestClient

from image_taxonomy.config import Settings
from image_taxonomy.items.models import WorkItemStatus
from image_taxonomy.poller import PollOutcome, StatusPoller
from image_taxonomy.queue import SqliteQueueClient
from image_taxonomy.web.app import create_app
from image_taxonomy.web.contracts import TERMINAL_MARKER
from image_taxonomy.worker.analyzers import EchoAnalyzer
from image_taxonomy.worker.worker import AnalysisWorker

pytestmark = [
    allure.epic("Status Polling"),
    allure.feature("Upload To Result"),
]

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def client(settings: Settings) -> Iterator[TestClient]:
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture()
def worker_queue(settings: Settings) -> Iterator[SqliteQueueClient]:
    queue = SqliteQueueClient(settings.queue_db_path, queue_name=settings.queue.queue_name)
    try:
        yield queue
    finally:
        queue.close()


def _submit(client: TestClient, title: str, **fields: str) -> str:
    response = client.post(
        "/items",
        data={"title": title, **fields},
        files={"image": ("upload.png", PNG_BYTES, "image/png")},
        follow_redirects=False,
    )
    assert response.status_code == 303
    return response.headers["location"]


def test_upload_analyze_and_poll_to_completion(
    client: TestClient,
    worker_queue: SqliteQueueClient,
) -> None:
    location = _submit(client, "Street photo", taxonomy="urban")
    worker = AnalysisWorker(
        repository=client.app.state.repository,
        queue=worker_queue,
        analyzer=EchoAnalyzer({"violations": {"weapons": 0.03}, "taxonomy": "rural"}),
        worker_id="e2e",
    )
    clock = FakeClock()
    rendered: list[str] = []

    def on_fragment(body: str) -> None:
        rendered.append(body)
        if len(rendered) == 2:
            worker.run_once()

    poller = StatusPoller(
        client=client,
        url=location,
        on_fragment=on_fragment,
        clock=clock,
        sleep=clock.sleep,
    )
    with poller:
        result = poller.poll()

    assert result.outcome == PollOutcome.TERMINAL
    assert result.attempts == 3
    assert all(TERMINAL_MARKER not in body for body in rendered[:2])
    assert 'data-status="complete"' in rendered[-1]
    assert "weapons" in rendered[-1]
    assert "urban" in rendered[-1]
    assert "rural" not in rendered[-1]

    work_item_id = int(location.rsplit("/", 1)[1])
    stored = client.app.state.repository.get(work_item_id)
    assert stored.status == WorkItemStatus.COMPLETE
    assert stored.violations == {"weapons": 0.03}
    assert stored.taxonomy == "urban"


def test_failed_analysis_also_stops_polling(
    client: TestClient,
    worker_queue: SqliteQueueClient,
) -> None:
    location = _submit(client, "Broken")
    repository = client.app.state.repository
    work_item_id = int(location.rsplit("/", 1)[1])
    repository.update_status(work_item_id, WorkItemStatus.PROCESSING)
    repository.update_status(
        work_item_id,
        WorkItemStatus.FAILED,
        {"error_message": "unsupported encoding"},
    )
    clock = FakeClock()
    rendered: list[str] = []

    with StatusPoller(
        client=client,
        url=location,
        on_fragment=rendered.append,
        clock=clock,
        sleep=clock.sleep,
    ) as poller:
        result = poller.poll()

    assert result.outcome == PollOutcome.TERMINAL
    assert result.attempts == 1
    assert "unsupported encoding" in rendered[0]

    # The pending message is still delivered; the worker acknowledges it untouched.
    worker = AnalysisWorker(
        repository=repository,
        queue=worker_queue,
        analyzer=EchoAnalyzer(),
        worker_id="e2e",
    )
    assert worker.run_once().skipped == 1
    assert repository.get(work_item_id).error_message == "unsupported encoding"


def test_polling_unknown_item_stops_on_not_found(client: TestClient) -> None:
    clock = FakeClock()
    rendered: list[str] = []

    with StatusPoller(
        client=client,
        url="/items/12345",
        on_fragment=rendered.append,
        clock=clock,
        sleep=clock.sleep,
    ) as poller:
        result = poller.poll()

    assert result.outcome == PollOutcome.NOT_FOUND
    assert rendered == []
