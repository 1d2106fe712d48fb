"""Queue worker that runs image analysis and writes back terminal status."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from image_taxonomy.errors import AnalysisError, DescriptorError, InvalidTransition, NotFound
from image_taxonomy.items.models import WorkItemStatus
from image_taxonomy.items.repository import WorkItemRepository
from image_taxonomy.items.state_machine import is_terminal
from image_taxonomy.queue.client import ClaimedMessage, SqliteQueueClient
from image_taxonomy.queue.descriptor import QueueDescriptor
from image_taxonomy.worker.analyzers import Analyzer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.skipped += other.skipped
        self.dead_lettered += other.dead_lettered
        self.idle_polls += other.idle_polls


class AnalysisWorker:
    """Consumes queue descriptors and drives work items to a terminal status.

    Redelivery is expected (at-least-once queue): an item that is already
    terminal is acknowledged without touching it again.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WorkItemRepository,
        queue: SqliteQueueClient,
        analyzer: Analyzer,
        worker_id: str,
        lease_seconds: int = 300,
        max_deliveries: int = 5,
        image_read_policy: str = "fail",
        retry_delay_seconds: float = 5.0,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        if image_read_policy not in {"fail", "retry"}:
            raise ValueError(f"Unsupported image read policy: {image_read_policy!r}")
        self.repository = repository
        self.queue = queue
        self.analyzer = analyzer
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.max_deliveries = max_deliveries
        self.image_read_policy = image_read_policy
        self.retry_delay_seconds = retry_delay_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Process at most one message from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        claimed = self.queue.claim(worker_id=self.worker_id, lease_seconds=self.lease_seconds)
        if claimed is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            descriptor = QueueDescriptor.from_json(claimed.payload)
        except DescriptorError as error:
            self.queue.dead_letter(claimed.message_id, str(error), worker_id=claimed.worker_id)
            summary.dead_lettered = 1
            return summary

        logger.info(
            "Processing work item %s (message=%s delivery=%s)",
            descriptor.work_item_id,
            claimed.message_id,
            claimed.deliveries,
        )
        self._process(claimed=claimed, descriptor=descriptor, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        max_messages: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue stays idle for ``max_idle_polls`` polls.

        Args:
            max_messages: Stop after processing this many messages (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting; 0 polls forever.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_messages is not None and aggregate.processed >= max_messages:
                    break

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if 0 < max_idle_polls <= consecutive_idle:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _process(
        self,
        *,
        claimed: ClaimedMessage,
        descriptor: QueueDescriptor,
        summary: WorkerRunSummary,
    ) -> None:
        work_item_id = descriptor.work_item_id
        try:
            item = self.repository.get(work_item_id)
        except NotFound:
            logger.warning(
                "Dropping message %s: work item %s not found",
                claimed.message_id,
                work_item_id,
            )
            self.queue.ack(claimed.message_id, worker_id=claimed.worker_id)
            summary.skipped = 1
            return

        if is_terminal(item.status):
            logger.info(
                "Work item %s already %s; acknowledging redelivery",
                item.id,
                item.status.value,
            )
            self.queue.ack(claimed.message_id, worker_id=claimed.worker_id)
            summary.skipped = 1
            return

        if item.status == WorkItemStatus.PENDING:
            try:
                self.repository.update_status(work_item_id, WorkItemStatus.PROCESSING)
            except InvalidTransition:
                if is_terminal(self.repository.get(work_item_id).status):
                    self.queue.ack(claimed.message_id, worker_id=claimed.worker_id)
                    summary.skipped = 1
                    return

        image_path = Path(descriptor.image_reference)
        try:
            _check_readable(image_path)
        except OSError as error:
            self._handle_unreadable_image(
                claimed=claimed,
                descriptor=descriptor,
                error=error,
                summary=summary,
            )
            return

        try:
            result = self.analyzer.analyze(image_path)
        except AnalysisError as error:
            logger.warning("Analysis failed for work item %s: %s", work_item_id, error)
            self._finish(
                claimed=claimed,
                work_item_id=work_item_id,
                status=WorkItemStatus.FAILED,
                payload={"error_message": str(error)},
            )
            summary.failed = 1
            return
        except Exception as error:  # noqa: BLE001
            logger.exception("Analyzer crashed on work item %s", work_item_id)
            self._finish(
                claimed=claimed,
                work_item_id=work_item_id,
                status=WorkItemStatus.FAILED,
                payload={"error_message": f"Analyzer crashed: {error}"},
            )
            summary.failed = 1
            return

        self._finish(
            claimed=claimed,
            work_item_id=work_item_id,
            status=WorkItemStatus.COMPLETE,
            payload=result,
        )
        summary.succeeded = 1

    def _handle_unreadable_image(
        self,
        *,
        claimed: ClaimedMessage,
        descriptor: QueueDescriptor,
        error: OSError,
        summary: WorkerRunSummary,
    ) -> None:
        reason = f"Image unreadable: {descriptor.image_reference}: {error.strerror or error}"
        if self.image_read_policy == "retry" and claimed.deliveries < self.max_deliveries:
            logger.warning(
                "%s; retrying in %.1fs (delivery %s/%s)",
                reason,
                self.retry_delay_seconds,
                claimed.deliveries,
                self.max_deliveries,
            )
            self.queue.release(
                claimed.message_id,
                worker_id=claimed.worker_id,
                delay_seconds=self.retry_delay_seconds,
                error=reason,
            )
            summary.retried = 1
            return

        logger.warning("%s; marking work item %s failed", reason, descriptor.work_item_id)
        self._write_terminal(
            work_item_id=descriptor.work_item_id,
            status=WorkItemStatus.FAILED,
            payload={"error_message": reason},
        )
        if self.image_read_policy == "retry":
            self.queue.dead_letter(claimed.message_id, reason, worker_id=claimed.worker_id)
            summary.dead_lettered = 1
        else:
            self.queue.ack(claimed.message_id, worker_id=claimed.worker_id)
        summary.failed = 1

    def _finish(
        self,
        *,
        claimed: ClaimedMessage,
        work_item_id: int,
        status: WorkItemStatus,
        payload: dict[str, Any],
    ) -> None:
        self._write_terminal(work_item_id=work_item_id, status=status, payload=payload)
        self.queue.ack(claimed.message_id, worker_id=claimed.worker_id)

    def _write_terminal(
        self,
        *,
        work_item_id: int,
        status: WorkItemStatus,
        payload: dict[str, Any],
    ) -> None:
        try:
            self.repository.update_status(work_item_id, status, payload)
        except InvalidTransition as error:
            # Another delivery of the same descriptor finished first.
            logger.info("Terminal write for work item %s skipped: %s", work_item_id, error)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received signal %s; stopping after current message", signum)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _check_readable(image_path: Path) -> None:
    with image_path.open("rb") as handle:
        if not handle.read(1):
            raise OSError(0, "empty file", str(image_path))
