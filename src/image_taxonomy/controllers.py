"""Controllers for image-taxonomy CLI commands."""

from __future__ import annotations

import json
import mimetypes
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path

from image_taxonomy.config import Settings
from image_taxonomy.errors import EnqueueError
from image_taxonomy.items.models import WorkItemStatus, WorkItemView
from image_taxonomy.items.repository import WorkItemRepository
from image_taxonomy.items.services import SubmissionRequest, SubmissionService
from image_taxonomy.poller import StatusPoller
from image_taxonomy.queue.client import SqliteQueueClient
from image_taxonomy.worker.analyzers import Analyzer, CommandAnalyzer, EchoAnalyzer
from image_taxonomy.worker.worker import AnalysisWorker


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for image submission."""

    db_path: Path | None
    image_path: Path
    title: str | None
    description: str | None
    taxonomy: str | None


@dataclass(slots=True)
class ListItemsCommand:
    """CLI input for item listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ShowItemCommand:
    """CLI input for item inspection."""

    db_path: Path | None
    work_item_id: int


@dataclass(slots=True)
class StuckItemsCommand:
    """CLI input for items that never reached a terminal status."""

    db_path: Path | None
    older_than_minutes: int
    limit: int


@dataclass(slots=True)
class SetStatusCommand:
    """CLI input for an operator-issued status write."""

    db_path: Path | None
    work_item_id: int
    status: str
    payload_json: str | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_messages: int | None
    max_idle_polls: int
    echo_analyzer: bool = False


@dataclass(slots=True)
class QueueStatsCommand:
    """CLI input for queue depth report."""

    db_path: Path | None


@dataclass(slots=True)
class PollCommand:
    """CLI input for polling one item's status from a running server."""

    work_item_id: int
    base_url: str | None
    interval_seconds: float | None
    max_attempts: int | None
    max_duration_seconds: float | None


class ImageTaxonomyCliController:
    """Coordinates submission, inspection, worker, and polling CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        content_type, _ = mimetypes.guess_type(command.image_path.name)
        with _repository(settings) as repository, _queue(settings) as queue:
            service = SubmissionService(
                repository=repository,
                queue=queue,
                upload_dir=settings.upload.upload_dir,
                max_upload_bytes=settings.upload.max_upload_bytes,
                allowed_content_types=settings.upload.allowed_content_types,
                on_enqueue_failure=settings.queue.on_enqueue_failure,
            )
            try:
                result = service.submit(
                    SubmissionRequest(
                        image_bytes=command.image_path.read_bytes(),
                        filename=command.image_path.name,
                        content_type=content_type,
                        title=command.title,
                        description=command.description,
                        taxonomy=command.taxonomy,
                    ),
                )
            except EnqueueError as error:
                item = repository.get(error.work_item_id) if error.work_item_id else None
                lines = [f"Enqueue failed: {error}"]
                if item is not None:
                    lines.append(f"Work item stored: id={item.id} status={item.status.value}")
                raise CliCommandError(lines) from error

        return [
            f"Work item created: id={result.item.id} status={result.item.status.value}",
            f"Queued: message_id={result.descriptor.message_id}",
        ]

    def list_items(self, command: ListItemsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = WorkItemStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            items = repository.list_items(status=status, limit=command.limit)
        if not items:
            return ["No work items found."]
        return [_item_line(item) for item in items]

    def show_item(self, command: ShowItemCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_details(command.work_item_id)

        item = details.item
        lines = [
            f"id={item.id}",
            f"status={item.status.value}",
            f"title={item.title or ''}",
            f"description={item.description or ''}",
            f"taxonomy={item.taxonomy or ''}",
            f"image_reference={item.image_reference}",
            f"created_at={item.created_at.isoformat()}",
            f"updated_at={item.updated_at.isoformat()}",
            f"violations={json.dumps(item.violations, ensure_ascii=False, sort_keys=True)}",
        ]
        if item.error_message:
            lines.append(f"error_message={item.error_message}")
        lines.append("events:")
        for event in details.events:
            transition = ""
            if event.status_to is not None:
                previous = event.status_from.value if event.status_from is not None else "-"
                transition = f" {previous}->{event.status_to.value}"
            suffix = f" {json.dumps(event.details, sort_keys=True)}" if event.details else ""
            lines.append(
                f"- {event.created_at.isoformat()} {event.event_type}{transition}{suffix}",
            )
        return lines

    def stuck_items(self, command: StuckItemsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            items = repository.list_stuck(
                older_than=timedelta(minutes=command.older_than_minutes),
                limit=command.limit,
            )
        if not items:
            return [f"No items stuck for more than {command.older_than_minutes} minutes."]
        return [_item_line(item) for item in items]

    def set_status(self, command: SetStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        payload = None
        if command.payload_json:
            payload = json.loads(command.payload_json)
            if not isinstance(payload, dict):
                raise CliCommandError(["--payload must be a JSON object."])
        with _repository(settings) as repository:
            item = repository.update_status(
                command.work_item_id,
                WorkItemStatus(command.status),
                payload,
            )
        return [_item_line(item)]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository, _queue(settings) as queue:
            worker = AnalysisWorker(
                repository=repository,
                queue=queue,
                analyzer=_analyzer(settings, echo=command.echo_analyzer),
                worker_id=settings.worker.worker_id,
                lease_seconds=settings.queue.lease_seconds,
                max_deliveries=settings.queue.max_deliveries,
                image_read_policy=settings.worker.image_read_policy,
                retry_delay_seconds=settings.worker.retry_delay_seconds,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
            )
            if command.once:
                summary = worker.run_once()
            else:
                summary = worker.run_loop(
                    max_messages=command.max_messages,
                    max_idle_polls=command.max_idle_polls,
                )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} skipped={summary.skipped} "
            f"dead_lettered={summary.dead_lettered} idle_polls={summary.idle_polls}",
        ]

    def queue_stats(self, command: QueueStatsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue(settings) as queue:
            counts = queue.stats()
        return [f"queue={settings.queue.queue_name}"] + [
            f"{state}={count}" for state, count in counts.items()
        ]

    def poll(self, command: PollCommand, *, emit: Callable[[str], None]) -> list[str]:
        settings = Settings.from_env()
        poller_settings = replace(
            settings.poller,
            base_url=command.base_url or settings.poller.base_url,
            interval_seconds=command.interval_seconds or settings.poller.interval_seconds,
            max_attempts=(
                command.max_attempts
                if command.max_attempts is not None
                else settings.poller.max_attempts
            ),
            max_duration_seconds=(
                command.max_duration_seconds
                if command.max_duration_seconds is not None
                else settings.poller.max_duration_seconds
            ),
        )
        settings = replace(settings, poller=poller_settings)
        settings.validate()

        with StatusPoller.for_work_item(
            base_url=poller_settings.base_url,
            work_item_id=command.work_item_id,
            on_fragment=emit,
            interval_seconds=poller_settings.interval_seconds,
            max_attempts=poller_settings.max_attempts,
            max_duration_seconds=poller_settings.max_duration_seconds,
            request_timeout_seconds=poller_settings.request_timeout_seconds,
        ) as poller:
            result = poller.poll()
        return [f"Polling stopped: outcome={result.outcome.value} attempts={result.attempts}"]


class CliCommandError(RuntimeError):
    """Command failure carrying lines to print before exiting non-zero."""

    def __init__(self, lines: list[str]) -> None:
        super().__init__("\n".join(lines))
        self.lines = lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _analyzer(settings: Settings, *, echo: bool) -> Analyzer:
    if echo:
        return EchoAnalyzer()
    if not settings.worker.analyzer_command:
        raise CliCommandError(
            ["IMAGE_TAXONOMY_ANALYZER_COMMAND is not set (use --echo-analyzer for a dry run)."],
        )
    return CommandAnalyzer(
        settings.worker.analyzer_command,
        timeout_seconds=settings.worker.analyzer_timeout_seconds,
    )


def _item_line(item: WorkItemView) -> str:
    return (
        f"id={item.id} status={item.status.value} "
        f"created_at={item.created_at.isoformat()} title={item.title or ''}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[WorkItemRepository]:
    repository = WorkItemRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _queue(settings: Settings) -> Iterator[SqliteQueueClient]:
    queue = SqliteQueueClient(
        settings.queue_db_path,
        queue_name=settings.queue.queue_name,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    queue.init_schema()
    try:
        yield queue
    finally:
        queue.close()
