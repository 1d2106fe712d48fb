"""Queue client backed by a durable SQLite table.

Delivery is at-least-once: a claimed message is leased, and a lease that
expires before ``ack`` makes the message claimable again. Consumers are
responsible for idempotent processing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from image_taxonomy.errors import EnqueueError
from image_taxonomy.queue.descriptor import QueueDescriptor
from image_taxonomy.storage.alembic_runner import upgrade_head
from image_taxonomy.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from image_taxonomy.storage.sqlmodel_models import QueueMessage

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "image_analysis"


class MessageState(str, Enum):
    """Durable queue message states."""

    READY = "ready"
    LEASED = "leased"
    DONE = "done"
    DEAD = "dead"


@dataclass(slots=True)
class ClaimedMessage:
    """One leased message handed to a consumer."""

    message_id: str
    payload: str
    deliveries: int
    worker_id: str


class QueueClient(Protocol):
    """Producer side of the queue contract."""

    def enqueue(self, work_item_id: int, image_reference: str) -> QueueDescriptor: ...


class SqliteQueueClient:
    """Durable queue facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        queue_name: str = DEFAULT_QUEUE_NAME,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.queue_name = queue_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, work_item_id: int, image_reference: str) -> QueueDescriptor:
        """Publish a descriptor; raise ``EnqueueError`` if the queue is unreachable."""

        now = utc_now()
        descriptor = QueueDescriptor(
            message_id=str(uuid4()),
            work_item_id=work_item_id,
            image_reference=image_reference,
            enqueued_at=now,
        )
        try:
            with Session(self.engine) as session:
                session.add(
                    QueueMessage(
                        message_id=descriptor.message_id,
                        queue_name=self.queue_name,
                        payload_json=descriptor.to_json(),
                        state=MessageState.READY.value,
                        deliveries=0,
                        available_at=to_db_datetime(now),
                        created_at=now,
                        updated_at=now,
                    ),
                )
                session.commit()
        except (SQLAlchemyError, OSError) as error:
            raise EnqueueError(
                f"Queue {self.queue_name!r} unreachable: {error}",
                work_item_id=work_item_id,
            ) from error

        logger.info(
            "Enqueued work item %s on %s (message_id=%s)",
            work_item_id,
            self.queue_name,
            descriptor.message_id,
        )
        return descriptor

    def claim(self, *, worker_id: str, lease_seconds: int) -> ClaimedMessage | None:
        """Atomically lease the oldest deliverable message."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueMessage)
                    .where(
                        QueueMessage.queue_name == self.queue_name,
                        or_(
                            and_(
                                col(QueueMessage.state) == MessageState.READY.value,
                                col(QueueMessage.available_at) <= now,
                            ),
                            and_(
                                col(QueueMessage.state) == MessageState.LEASED.value,
                                col(QueueMessage.lease_expires_at) <= now,
                            ),
                        ),
                    )
                    .order_by(
                        col(QueueMessage.available_at).asc(),
                        col(QueueMessage.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                # The ORM update below refreshes ``candidate`` in place.
                message_id = candidate.message_id
                observed_state = candidate.state
                observed_deliveries = candidate.deliveries
                payload = candidate.payload_json

                result = session.exec(
                    sa_update(QueueMessage)
                    .where(
                        col(QueueMessage.message_id) == message_id,
                        col(QueueMessage.state) == observed_state,
                        col(QueueMessage.deliveries) == observed_deliveries,
                    )
                    .values(
                        state=MessageState.LEASED.value,
                        deliveries=observed_deliveries + 1,
                        lease_expires_at=now + timedelta(seconds=lease_seconds),
                        worker_id=worker_id,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.commit()

            claimed = ClaimedMessage(
                message_id=message_id,
                payload=payload,
                deliveries=observed_deliveries + 1,
                worker_id=worker_id,
            )
            if observed_state == MessageState.LEASED.value:
                logger.warning(
                    "Lease expired for message %s; redelivering to %s",
                    claimed.message_id,
                    worker_id,
                )
            return claimed

    def ack(self, message_id: str, *, worker_id: str) -> bool:
        """Mark a message leased by ``worker_id`` as processed."""

        return self._finish_lease(
            message_id,
            worker_id=worker_id,
            state=MessageState.DONE,
            error=None,
        )

    def dead_letter(self, message_id: str, error: str, *, worker_id: str) -> bool:
        """Park a leased message that must not be redelivered."""

        logger.warning("Dead-lettering message %s: %s", message_id, error)
        return self._finish_lease(
            message_id,
            worker_id=worker_id,
            state=MessageState.DEAD,
            error=error,
        )

    def release(
        self,
        message_id: str,
        *,
        worker_id: str,
        delay_seconds: float,
        error: str,
    ) -> bool:
        """Return a leased message to the queue for a later delivery.

        Only the worker holding the lease may release it; a worker whose lease
        expired and was reclaimed gets ``False``.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessage)
                .where(
                    col(QueueMessage.message_id) == message_id,
                    col(QueueMessage.state) == MessageState.LEASED.value,
                    col(QueueMessage.worker_id) == worker_id,
                )
                .values(
                    state=MessageState.READY.value,
                    available_at=now + timedelta(seconds=max(0.0, delay_seconds)),
                    lease_expires_at=None,
                    worker_id=None,
                    last_error=error,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def stats(self) -> dict[str, int]:
        """Message counts per state for this queue."""

        counts = {state.value: 0 for state in MessageState}
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueMessage.state, func.count())
                .where(QueueMessage.queue_name == self.queue_name)
                .group_by(QueueMessage.state),
            ).all()
        for state, count in rows:
            counts[str(state)] = int(count)
        return counts

    def _finish_lease(
        self,
        message_id: str,
        *,
        worker_id: str,
        state: MessageState,
        error: str | None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessage)
                .where(
                    col(QueueMessage.message_id) == message_id,
                    col(QueueMessage.state) == MessageState.LEASED.value,
                    col(QueueMessage.worker_id) == worker_id,
                )
                .values(
                    state=state.value,
                    lease_expires_at=None,
                    last_error=error,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True
