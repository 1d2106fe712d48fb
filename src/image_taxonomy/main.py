"""CLI entrypoint for image-taxonomy."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import TypeVar

import rich_click as click

from image_taxonomy import __version__
from image_taxonomy.controllers import (
    CliCommandError,
    ImageTaxonomyCliController,
    ListItemsCommand,
    PollCommand,
    QueueStatsCommand,
    SetStatusCommand,
    ShowItemCommand,
    StuckItemsCommand,
    SubmitCommand,
    WorkerCommand,
)
from image_taxonomy.errors import ImageTaxonomyError
from image_taxonomy.items.models import WorkItemStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ImageTaxonomyCliController()
STATUS_CHOICES = [status.value for status in WorkItemStatus]

F = TypeVar("F", bound=Callable[..., None])


def _domain_errors(func: F) -> F:
    @wraps(func)
    def wrapper(*args: object, **kwargs: object) -> None:
        try:
            func(*args, **kwargs)
        except (CliCommandError, ImageTaxonomyError, ValueError) as error:
            raise click.ClickException(str(error)) from error

    return wrapper  # type: ignore[return-value]


@click.group()
@click.version_option(version=__version__, prog_name="image-taxonomy")
def image_taxonomy() -> None:
    """Image upload with queued analysis and polled status updates."""

    logging.basicConfig(
        level=os.getenv("IMAGE_TAXONOMY_LOG_LEVEL", "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@image_taxonomy.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=8000, show_default=True)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_domain_errors
def serve(host: str, port: int, db_path: Path | None) -> None:
    """Run the web tier (submission form, item pages, status fragments)."""

    import uvicorn

    from image_taxonomy.config import Settings
    from image_taxonomy.web.app import create_app

    app = create_app(Settings.from_env(db_path=db_path))
    uvicorn.run(app, host=host, port=port)


@image_taxonomy.command("submit")
@click.argument("image_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", default=None, help="Title; defaults to the file name.")
@click.option("--description", default=None)
@click.option("--taxonomy", default=None)
@_domain_errors
def submit(
    image_path: Path,
    db_path: Path | None,
    title: str | None,
    description: str | None,
    taxonomy: str | None,
) -> None:
    """Create a work item for IMAGE_PATH and queue it for analysis."""

    _emit_lines(
        CONTROLLER.submit(
            SubmitCommand(
                db_path=db_path,
                image_path=image_path,
                title=title,
                description=description,
                taxonomy=taxonomy,
            ),
        ),
    )


@image_taxonomy.group()
def items() -> None:
    """Work item inspection commands."""


@items.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
@_domain_errors
def items_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent work items, newest first."""

    _emit_lines(
        CONTROLLER.list_items(ListItemsCommand(db_path=db_path, status=status, limit=limit)),
    )


@items.command("show")
@click.argument("work_item_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_domain_errors
def items_show(work_item_id: int, db_path: Path | None) -> None:
    """Show one work item with its event history."""

    _emit_lines(CONTROLLER.show_item(ShowItemCommand(db_path=db_path, work_item_id=work_item_id)))


@items.command("stuck")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-minutes",
    type=click.IntRange(min=1),
    default=30,
    show_default=True,
    help="Report pending/processing items not updated within this window.",
)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=100, show_default=True)
@_domain_errors
def items_stuck(db_path: Path | None, older_than_minutes: int, limit: int) -> None:
    """List items that have not reached a terminal status."""

    _emit_lines(
        CONTROLLER.stuck_items(
            StuckItemsCommand(
                db_path=db_path,
                older_than_minutes=older_than_minutes,
                limit=limit,
            ),
        ),
    )


@items.command("set-status")
@click.argument("work_item_id", type=int)
@click.argument("status", type=click.Choice(STATUS_CHOICES))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--payload", "payload_json", default=None, help="Result payload as a JSON object.")
@_domain_errors
def items_set_status(
    work_item_id: int,
    status: str,
    db_path: Path | None,
    payload_json: str | None,
) -> None:
    """Apply a status transition the way an external worker would."""

    _emit_lines(
        CONTROLLER.set_status(
            SetStatusCommand(
                db_path=db_path,
                work_item_id=work_item_id,
                status=status,
                payload_json=payload_json,
            ),
        ),
    )


@image_taxonomy.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Process at most one message.")
@click.option("--max-messages", type=click.IntRange(min=1), default=None)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls; 0 runs until stopped.",
)
@click.option(
    "--echo-analyzer",
    is_flag=True,
    default=False,
    help="Use the built-in echo analyzer instead of IMAGE_TAXONOMY_ANALYZER_COMMAND.",
)
@_domain_errors
def worker(
    db_path: Path | None,
    once: bool,
    max_messages: int | None,
    max_idle_polls: int,
    echo_analyzer: bool,
) -> None:
    """Run the reference analysis worker against the queue."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_messages=max_messages,
                max_idle_polls=max_idle_polls,
                echo_analyzer=echo_analyzer,
            ),
        ),
    )


@image_taxonomy.group()
def queue() -> None:
    """Queue inspection commands."""


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_domain_errors
def queue_stats(db_path: Path | None) -> None:
    """Show message counts per state."""

    _emit_lines(CONTROLLER.queue_stats(QueueStatsCommand(db_path=db_path)))


@image_taxonomy.command("poll")
@click.argument("work_item_id", type=int)
@click.option("--base-url", default=None, help="Server URL; defaults to IMAGE_TAXONOMY_BASE_URL.")
@click.option("--interval", "interval_seconds", type=click.FloatRange(min=0.1), default=None)
@click.option("--max-attempts", type=click.IntRange(min=0), default=None)
@click.option("--max-duration", "max_duration_seconds", type=click.FloatRange(min=0), default=None)
@_domain_errors
def poll(
    work_item_id: int,
    base_url: str | None,
    interval_seconds: float | None,
    max_attempts: int | None,
    max_duration_seconds: float | None,
) -> None:
    """Poll a running server until WORK_ITEM_ID reaches a terminal status."""

    _emit_lines(
        CONTROLLER.poll(
            PollCommand(
                work_item_id=work_item_id,
                base_url=base_url,
                interval_seconds=interval_seconds,
                max_attempts=max_attempts,
                max_duration_seconds=max_duration_seconds,
            ),
            emit=click.echo,
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    image_taxonomy()
