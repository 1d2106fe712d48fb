"""SQLModel ORM tables for work items and the durable analysis queue."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlmodel import Field, SQLModel


class WorkItem(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_work_items_status_created", "processing_status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    title: str | None = None
    description: str | None = Field(default=None, sa_column=Column(Text))
    taxonomy: str | None = None
    processing_status: str = Field(
        default="pending",
        sa_column=Column(String, nullable=False, server_default="pending"),
    )
    violations: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, server_default=text("'{}'")),
    )
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    image_reference: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemEvent(SQLModel, table=True):
    __tablename__ = "work_item_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_item_events_item_time", "work_item_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    work_item_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("work_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueMessage(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_messages_claim", "queue_name", "state", "available_at"),)

    message_id: str = Field(primary_key=True)
    queue_name: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    state: str
    deliveries: int = Field(default=0)
    available_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    worker_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
