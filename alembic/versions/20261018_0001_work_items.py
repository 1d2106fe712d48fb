"""Create work item, work item event, and queue message tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("taxonomy", sa.String(), nullable=True),
        sa.Column(
            "processing_status",
            sa.String(),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("violations", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("image_reference", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "idx_work_items_status_created",
        "work_items",
        ["processing_status", "created_at"],
        unique=False,
    )

    op.create_table(
        "work_item_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "work_item_id",
            sa.Integer(),
            sa.ForeignKey("work_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_work_item_events_item_time",
        "work_item_events",
        ["work_item_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "queue_messages",
        sa.Column("message_id", sa.String(), primary_key=True),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("deliveries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_queue_messages_claim",
        "queue_messages",
        ["queue_name", "state", "available_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_queue_messages_claim", table_name="queue_messages")
    op.drop_table("queue_messages")
    op.drop_index("idx_work_item_events_item_time", table_name="work_item_events")
    op.drop_table("work_item_events")
    op.drop_index("idx_work_items_status_created", table_name="work_items")
    op.drop_table("work_items")
