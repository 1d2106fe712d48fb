"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from image_taxonomy.config import QueueSettings, Settings, UploadSettings
from image_taxonomy.items.models import WorkItemCreate, WorkItemView
from image_taxonomy.items.repository import WorkItemRepository
from image_taxonomy.queue.client import SqliteQueueClient

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "image_taxonomy.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[WorkItemRepository]:
    repo = WorkItemRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def queue(db_path: Path, repository: WorkItemRepository) -> Iterator[SqliteQueueClient]:
    client = SqliteQueueClient(db_path)
    try:
        yield client
    finally:
        client.close()


@pytest.fixture()
def image_file(tmp_path: Path) -> Path:
    path = tmp_path / "staged" / "sample.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(PNG_BYTES)
    return path


@pytest.fixture()
def make_item(repository: WorkItemRepository, image_file: Path):
    def _make(title: str | None = "sample") -> WorkItemView:
        return repository.create(WorkItemCreate(title=title), str(image_file))

    return _make


@pytest.fixture()
def settings(tmp_path: Path, db_path: Path) -> Settings:
    return Settings(
        db_path=db_path,
        upload=UploadSettings(upload_dir=tmp_path / "uploads"),
        queue=QueueSettings(),
    )
