"""FastAPI application exposing submission and status endpoints."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from image_taxonomy.config import Settings
from image_taxonomy.errors import EnqueueError, NotFound, ValidationError
from image_taxonomy.items.repository import WorkItemRepository
from image_taxonomy.items.services import SubmissionRequest, SubmissionService
from image_taxonomy.queue.client import SqliteQueueClient
from image_taxonomy.web.contracts import STREAM_MEDIA_TYPE
from image_taxonomy.web.endpoint import get_status_view
from image_taxonomy.web.render import (
    render_form_page,
    render_index_page,
    render_item_page,
    render_message_page,
)

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the web app; store and queue are opened for the app lifetime."""

    settings = settings or Settings.from_env()
    settings.validate()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        repository = WorkItemRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        queue = SqliteQueueClient(
            settings.queue_db_path,
            queue_name=settings.queue.queue_name,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        repository.init_schema()
        if settings.queue_db_path != settings.db_path:
            queue.init_schema()
        app.state.repository = repository
        app.state.submissions = SubmissionService(
            repository=repository,
            queue=queue,
            upload_dir=settings.upload.upload_dir,
            max_upload_bytes=settings.upload.max_upload_bytes,
            allowed_content_types=settings.upload.allowed_content_types,
            on_enqueue_failure=settings.queue.on_enqueue_failure,
        )
        logger.info("Web tier started (db=%s, queue=%s)", settings.db_path, queue.queue_name)
        try:
            yield
        finally:
            queue.close()
            repository.close()
            logger.info("Web tier stopped")

    app = FastAPI(title="image-taxonomy", lifespan=lifespan)
    poll_interval_ms = int(settings.poller.interval_seconds * 1000)

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound) -> Response:
        if _wants_stream(request):
            return Response(status_code=404, media_type=STREAM_MEDIA_TYPE)
        return HTMLResponse(
            render_message_page("Not found", str(exc), link="/items"),
            status_code=404,
        )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/", include_in_schema=False)
    async def root() -> RedirectResponse:
        return RedirectResponse("/items", status_code=303)

    @app.get("/items", response_class=HTMLResponse)
    def list_items(request: Request, limit: int = 50) -> HTMLResponse:
        repository: WorkItemRepository = request.app.state.repository
        return HTMLResponse(render_index_page(repository.list_items(limit=limit)))

    @app.get("/items/new", response_class=HTMLResponse)
    async def new_item() -> HTMLResponse:
        return HTMLResponse(render_form_page())

    @app.post("/items")
    def create_item(  # noqa: PLR0913
        request: Request,
        title: str | None = Form(default=None),
        description: str | None = Form(default=None),
        taxonomy: str | None = Form(default=None),
        image: UploadFile | None = File(default=None),
    ) -> Response:
        submissions: SubmissionService = request.app.state.submissions
        image_bytes = image.file.read() if image is not None else None
        submission = SubmissionRequest(
            image_bytes=image_bytes,
            filename=image.filename if image is not None else None,
            content_type=image.content_type if image is not None else None,
            title=title,
            description=description,
            taxonomy=taxonomy,
        )
        try:
            result = submissions.submit(submission)
        except ValidationError as error:
            logger.info("Submission rejected: %s", error)
            return HTMLResponse(
                render_form_page(
                    errors=error.field_errors,
                    values={"title": title, "description": description, "taxonomy": taxonomy},
                ),
                status_code=422,
            )
        except EnqueueError as error:
            logger.error("Submission %s stored but not queued: %s", error.work_item_id, error)
            return HTMLResponse(
                render_message_page(
                    "Analysis not started",
                    "The image was saved but analysis could not be started.",
                    link=f"/items/{error.work_item_id}" if error.work_item_id else "/items",
                ),
                status_code=503,
            )
        return RedirectResponse(f"/items/{result.item.id}", status_code=303)

    @app.get("/items/{work_item_id}")
    def show_item(request: Request, work_item_id: int) -> Response:
        repository: WorkItemRepository = request.app.state.repository
        if _wants_stream(request):
            fragment = get_status_view(repository, work_item_id)
            return Response(content=fragment.body, media_type=fragment.media_type)
        item = repository.get(work_item_id)
        return HTMLResponse(render_item_page(item, poll_interval_ms=poll_interval_ms))

    return app


def _wants_stream(request: Request) -> bool:
    return STREAM_MEDIA_TYPE in request.headers.get("accept", "")
