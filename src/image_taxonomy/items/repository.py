"""Durable work item store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from image_taxonomy.errors import NotFound, ValidationError
from image_taxonomy.items.models import (
    RESULT_PAYLOAD_KEYS,
    WorkItemCreate,
    WorkItemDetails,
    WorkItemEventView,
    WorkItemStatus,
    WorkItemView,
)
from image_taxonomy.items.state_machine import INITIAL_STATUS, ensure_transition, is_terminal
from image_taxonomy.storage.alembic_runner import upgrade_head
from image_taxonomy.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from image_taxonomy.storage.sqlmodel_models import WorkItem, WorkItemEvent

logger = logging.getLogger(__name__)


class WorkItemRepository:
    """Work item persistence facade.

    Status writes are compare-and-set updates keyed on the status observed by
    the writer, so a stale write from a slower worker can never overwrite a
    more advanced status.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(self, metadata: WorkItemCreate, image_reference: str | None) -> WorkItemView:
        """Create a work item in the initial status.

        The image reference must already resolve to readable bytes; the caller
        publishes the queue descriptor only after this commit returns.
        """

        image_reference = _ensure_readable_image(image_reference)

        now = utc_now()
        with Session(self.engine) as session:
            row = WorkItem(
                title=metadata.title,
                description=metadata.description,
                taxonomy=metadata.taxonomy,
                processing_status=INITIAL_STATUS.value,
                violations={},
                image_reference=image_reference,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                work_item_id=_row_id(row),
                event_type="created",
                status_from=None,
                status_to=INITIAL_STATUS,
                details={"image_reference": image_reference},
            )
            session.commit()
            session.refresh(row)
            logger.info("Work item %s created (image=%s)", row.id, image_reference)
            return _to_item_view(row)

    def get(self, work_item_id: int) -> WorkItemView:
        """Return the current work item snapshot or raise ``NotFound``."""

        with Session(self.engine) as session:
            return _to_item_view(self._get_row(session=session, work_item_id=work_item_id))

    def update_status(
        self,
        work_item_id: int,
        new_status: WorkItemStatus,
        result_payload: dict[str, Any] | None = None,
    ) -> WorkItemView:
        """Apply one state machine transition atomically.

        ``result_payload`` is only accepted together with a terminal status. Its
        ``violations`` object and ``error_message`` are written in the same
        statement as the status, so readers never see a half-written
        status/result pair. Producer metadata is never part of the payload.

        Repeating the terminal write an item already holds (same status, same
        payload) returns the stored item unchanged; any other write out of a
        terminal status raises ``InvalidTransition``.
        """

        new_status = WorkItemStatus(new_status)
        values = _result_values(new_status, result_payload)

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = self._get_row(session=session, work_item_id=work_item_id)
                current = WorkItemStatus(row.processing_status)
                if current == new_status and is_terminal(current) and _already_stored(row, values):
                    logger.info(
                        "Work item %s already %s; repeated write ignored",
                        work_item_id,
                        current.value,
                    )
                    return _to_item_view(row)
                ensure_transition(current, new_status)

                result = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.id) == work_item_id,
                        col(WorkItem.processing_status) == current.value,
                    )
                    .values(
                        processing_status=new_status.value,
                        updated_at=to_db_datetime(now),
                        **values,
                    ),
                )
                if result.rowcount != 1:
                    # Lost the race; re-read and re-validate against the newer status.
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    work_item_id=work_item_id,
                    event_type="status_changed",
                    status_from=current,
                    status_to=new_status,
                    details={"result_keys": sorted(values)} if values else {},
                )
                updated = session.exec(
                    select(WorkItem)
                    .where(WorkItem.id == work_item_id)
                    .execution_options(populate_existing=True),
                ).one()
                view = _to_item_view(updated)
                session.commit()

            logger.info("Work item %s: %s -> %s", work_item_id, current.value, new_status.value)
            return view

    def list_items(
        self,
        *,
        status: WorkItemStatus | None = None,
        limit: int = 50,
    ) -> list[WorkItemView]:
        """List recent work items, newest first."""

        with Session(self.engine) as session:
            statement = (
                select(WorkItem)
                .order_by(col(WorkItem.created_at).desc(), col(WorkItem.id).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(WorkItem.processing_status == status.value)
            rows = session.exec(statement).all()
        return [_to_item_view(row) for row in rows]

    def list_stuck(
        self,
        *,
        older_than: timedelta,
        statuses: Iterable[WorkItemStatus] = (WorkItemStatus.PENDING, WorkItemStatus.PROCESSING),
        limit: int = 100,
    ) -> list[WorkItemView]:
        """Items that have not reached a terminal status within ``older_than``."""

        cutoff = to_db_datetime(utc_now() - older_than)
        status_values = [WorkItemStatus(status).value for status in statuses]
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItem)
                .where(
                    col(WorkItem.processing_status).in_(status_values),
                    col(WorkItem.updated_at) <= cutoff,
                )
                .order_by(col(WorkItem.updated_at).asc())
                .limit(limit),
            ).all()
        return [_to_item_view(row) for row in rows]

    def get_details(self, work_item_id: int) -> WorkItemDetails:
        """Return the work item with its event stream."""

        with Session(self.engine) as session:
            row = self._get_row(session=session, work_item_id=work_item_id)
            event_rows = session.exec(
                select(WorkItemEvent)
                .where(WorkItemEvent.work_item_id == work_item_id)
                .order_by(col(WorkItemEvent.created_at).asc(), col(WorkItemEvent.id).asc()),
            ).all()
            item = _to_item_view(row)

        events: list[WorkItemEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                WorkItemEventView(
                    event_id=event_row.id or 0,
                    work_item_id=event_row.work_item_id,
                    event_type=event_row.event_type,
                    status_from=(
                        WorkItemStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        WorkItemStatus(event_row.status_to)
                        if event_row.status_to is not None
                        else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return WorkItemDetails(item=item, events=events)

    def record_event(
        self,
        *,
        work_item_id: int,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append an audit event that does not change status."""

        with Session(self.engine) as session:
            self._get_row(session=session, work_item_id=work_item_id)
            self._add_event(
                session=session,
                work_item_id=work_item_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def _get_row(self, *, session: Session, work_item_id: int) -> WorkItem:
        row = session.exec(select(WorkItem).where(WorkItem.id == work_item_id)).one_or_none()
        if row is None:
            raise NotFound(work_item_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        work_item_id: int,
        event_type: str,
        status_from: WorkItemStatus | None,
        status_to: WorkItemStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkItemEvent(
                work_item_id=work_item_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _ensure_readable_image(image_reference: str | None) -> str:
    if not image_reference:
        raise ValidationError({"image": "An image is required."})
    path = Path(image_reference)
    try:
        with path.open("rb") as handle:
            first_byte = handle.read(1)
    except OSError as error:
        raise ValidationError({"image": f"Image is not readable: {error.strerror}"}) from error
    if not first_byte:
        raise ValidationError({"image": "Image file is empty."})
    return image_reference


def _result_values(
    new_status: WorkItemStatus,
    result_payload: dict[str, Any] | None,
) -> dict[str, Any]:
    if not result_payload:
        return {}
    if not is_terminal(new_status):
        raise ValidationError(
            {
                "result_payload": (
                    f"Result payload requires a terminal status, got {new_status.value}."
                ),
            },
        )

    unknown = sorted(set(result_payload) - set(RESULT_PAYLOAD_KEYS))
    if unknown:
        raise ValidationError({"result_payload": f"Unsupported result keys: {', '.join(unknown)}"})

    values: dict[str, Any] = {}
    if "violations" in result_payload:
        violations = result_payload["violations"]
        if violations is None:
            violations = {}
        if not isinstance(violations, dict):
            raise ValidationError({"violations": "Violations must be a JSON object."})
        values["violations"] = violations
    if result_payload.get("error_message") is not None:
        values["error_message"] = str(result_payload["error_message"])
    return values


def _already_stored(row: WorkItem, values: dict[str, Any]) -> bool:
    return all(getattr(row, key) == value for key, value in values.items())


def _row_id(row: WorkItem) -> int:
    if row.id is None:
        raise RuntimeError("Work item row has no primary key; flush it first.")
    return row.id


def _to_item_view(row: WorkItem) -> WorkItemView:
    return WorkItemView(
        id=_row_id(row),
        title=row.title,
        description=row.description,
        taxonomy=row.taxonomy,
        status=WorkItemStatus(row.processing_status),
        violations=dict(row.violations or {}),
        error_message=row.error_message,
        image_reference=row.image_reference,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )

