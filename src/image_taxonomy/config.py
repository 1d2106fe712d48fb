"""Runtime configuration for the web tier, queue, worker, and poller."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

ENQUEUE_FAILURE_POLICIES = ("leave_pending", "mark_failed")
IMAGE_READ_POLICIES = ("fail", "retry")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class UploadSettings:
    """Where submitted images are staged before the work item is created."""

    upload_dir: Path = Path(".image_taxonomy_uploads")
    max_upload_bytes: int = 20 * 1024 * 1024
    allowed_content_types: tuple[str, ...] = (
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
    )


@dataclass(slots=True)
class QueueSettings:
    """Durable queue settings."""

    db_path: Path | None = None
    queue_name: str = "image_analysis"
    lease_seconds: int = 300
    max_deliveries: int = 5
    on_enqueue_failure: str = "leave_pending"


@dataclass(slots=True)
class WorkerSettings:
    """Reference analysis worker settings."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    poll_interval_seconds: float = 1.0
    image_read_policy: str = "fail"
    retry_delay_seconds: float = 5.0
    analyzer_command: str | None = None
    analyzer_timeout_seconds: int = 300


@dataclass(slots=True)
class PollerSettings:
    """Client poller settings; zero limits mean poll until terminal."""

    base_url: str = "http://127.0.0.1:8000"
    interval_seconds: float = 2.0
    max_attempts: int = 0
    max_duration_seconds: float = 0.0
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".image_taxonomy.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    upload: UploadSettings = field(default_factory=UploadSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    poller: PollerSettings = field(default_factory=PollerSettings)

    @property
    def queue_db_path(self) -> Path:
        return self.queue.db_path or self.db_path

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        queue_db_raw = os.getenv("IMAGE_TAXONOMY_QUEUE_DB_PATH", "").strip()
        worker_defaults = WorkerSettings()
        return cls(
            db_path=db_path or Path(os.getenv("IMAGE_TAXONOMY_DB_PATH", ".image_taxonomy.db")),
            sqlite_busy_timeout_ms=int(os.getenv("IMAGE_TAXONOMY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("IMAGE_TAXONOMY_LOG_LEVEL", "INFO").strip().upper(),
            upload=UploadSettings(
                upload_dir=Path(
                    os.getenv("IMAGE_TAXONOMY_UPLOAD_DIR", ".image_taxonomy_uploads"),
                ),
                max_upload_bytes=int(
                    os.getenv("IMAGE_TAXONOMY_MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)),
                ),
                allowed_content_types=_env_csv(
                    "IMAGE_TAXONOMY_ALLOWED_CONTENT_TYPES",
                    default=UploadSettings().allowed_content_types,
                ),
            ),
            queue=QueueSettings(
                db_path=Path(queue_db_raw) if queue_db_raw else None,
                queue_name=os.getenv("IMAGE_TAXONOMY_QUEUE_NAME", "image_analysis"),
                lease_seconds=int(os.getenv("IMAGE_TAXONOMY_QUEUE_LEASE_SECONDS", "300")),
                max_deliveries=int(os.getenv("IMAGE_TAXONOMY_QUEUE_MAX_DELIVERIES", "5")),
                on_enqueue_failure=os.getenv(
                    "IMAGE_TAXONOMY_ON_ENQUEUE_FAILURE",
                    "leave_pending",
                ).strip(),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("IMAGE_TAXONOMY_WORKER_ID", worker_defaults.worker_id),
                poll_interval_seconds=float(
                    os.getenv("IMAGE_TAXONOMY_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                image_read_policy=os.getenv(
                    "IMAGE_TAXONOMY_WORKER_IMAGE_READ_POLICY",
                    "fail",
                ).strip(),
                retry_delay_seconds=float(
                    os.getenv("IMAGE_TAXONOMY_WORKER_RETRY_DELAY_SECONDS", "5.0"),
                ),
                analyzer_command=os.getenv("IMAGE_TAXONOMY_ANALYZER_COMMAND") or None,
                analyzer_timeout_seconds=int(
                    os.getenv("IMAGE_TAXONOMY_ANALYZER_TIMEOUT_SECONDS", "300"),
                ),
            ),
            poller=PollerSettings(
                base_url=os.getenv("IMAGE_TAXONOMY_BASE_URL", "http://127.0.0.1:8000"),
                interval_seconds=float(os.getenv("IMAGE_TAXONOMY_POLL_INTERVAL_SECONDS", "2.0")),
                max_attempts=int(os.getenv("IMAGE_TAXONOMY_POLL_MAX_ATTEMPTS", "0")),
                max_duration_seconds=float(
                    os.getenv("IMAGE_TAXONOMY_POLL_MAX_DURATION_SECONDS", "0"),
                ),
                request_timeout_seconds=float(
                    os.getenv("IMAGE_TAXONOMY_POLL_REQUEST_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot honor."""

        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"IMAGE_TAXONOMY_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("IMAGE_TAXONOMY_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.upload.max_upload_bytes <= 0:
            raise ValueError("IMAGE_TAXONOMY_MAX_UPLOAD_BYTES must be > 0.")
        if not self.queue.queue_name.strip():
            raise ValueError("IMAGE_TAXONOMY_QUEUE_NAME must not be empty.")
        if self.queue.lease_seconds <= 0:
            raise ValueError("IMAGE_TAXONOMY_QUEUE_LEASE_SECONDS must be > 0.")
        if self.queue.max_deliveries <= 0:
            raise ValueError("IMAGE_TAXONOMY_QUEUE_MAX_DELIVERIES must be > 0.")
        if self.queue.on_enqueue_failure not in ENQUEUE_FAILURE_POLICIES:
            raise ValueError(
                "IMAGE_TAXONOMY_ON_ENQUEUE_FAILURE must be one of "
                f"{', '.join(ENQUEUE_FAILURE_POLICIES)}, got {self.queue.on_enqueue_failure!r}.",
            )
        if self.worker.image_read_policy not in IMAGE_READ_POLICIES:
            raise ValueError(
                "IMAGE_TAXONOMY_WORKER_IMAGE_READ_POLICY must be one of "
                f"{', '.join(IMAGE_READ_POLICIES)}, got {self.worker.image_read_policy!r}.",
            )
        if self.worker.retry_delay_seconds < 0:
            raise ValueError("IMAGE_TAXONOMY_WORKER_RETRY_DELAY_SECONDS must be >= 0.")
        if self.poller.interval_seconds <= 0:
            raise ValueError("IMAGE_TAXONOMY_POLL_INTERVAL_SECONDS must be > 0.")
        if self.poller.max_attempts < 0:
            raise ValueError("IMAGE_TAXONOMY_POLL_MAX_ATTEMPTS must be >= 0.")
        if self.poller.max_duration_seconds < 0:
            raise ValueError("IMAGE_TAXONOMY_POLL_MAX_DURATION_SECONDS must be >= 0.")
        _validate_base_url(self.poller.base_url)


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid IMAGE_TAXONOMY_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())
