"""Orchestration sessions, append-only events and the task queue."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "orchestration_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("execution_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("messages_json", sa.Text(), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("final_response", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("session_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'queued', 'running', 'completed', 'failed')",
            name="ck_orchestration_sessions_status",
        ),
        sa.CheckConstraint(
            "NOT (final_response IS NOT NULL AND error IS NOT NULL)",
            name="ck_orchestration_sessions_single_outcome",
        ),
    )
    op.create_index(
        "ix_orchestration_sessions_status",
        "orchestration_sessions",
        ["status"],
        unique=False,
    )
    op.create_index(
        "ix_orchestration_sessions_claimed_by",
        "orchestration_sessions",
        ["claimed_by"],
        unique=False,
    )
    op.create_index(
        "idx_orchestration_sessions_status_created",
        "orchestration_sessions",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "orchestration_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("event_data_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["orchestration_sessions.session_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "event_type IN ("
            "'tool_call', 'tool_result', 'verification', 'retry', 'thinking', "
            "'status_update', 'error', 'context_compression', 'agent_created', "
            "'agent_thought', 'discussion_turn')",
            name="ck_orchestration_events_event_type",
        ),
    )
    op.create_index(
        "ix_orchestration_events_session_id",
        "orchestration_events",
        ["session_id"],
        unique=False,
    )
    op.create_index(
        "ix_orchestration_events_event_type",
        "orchestration_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_orchestration_events_session_order",
        "orchestration_events",
        ["session_id", "created_at", "id"],
        unique=False,
    )

    op.create_table(
        "task_queue_messages",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("receive_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("redrive_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("visible_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("receipt_handle", sa.String(), nullable=True),
        sa.Column("first_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_letter_reason", sa.Text(), nullable=True),
        sa.Column("alerted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index(
        "ix_task_queue_messages_queue_name",
        "task_queue_messages",
        ["queue_name"],
        unique=False,
    )
    op.create_index(
        "ix_task_queue_messages_session_id",
        "task_queue_messages",
        ["session_id"],
        unique=False,
    )
    op.create_index(
        "ix_task_queue_messages_status",
        "task_queue_messages",
        ["status"],
        unique=False,
    )
    op.create_index(
        "ix_task_queue_messages_receipt_handle",
        "task_queue_messages",
        ["receipt_handle"],
        unique=False,
    )
    op.create_index(
        "idx_task_queue_messages_visible",
        "task_queue_messages",
        ["queue_name", "status", "visible_after"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_task_queue_messages_visible", table_name="task_queue_messages")
    op.drop_index("ix_task_queue_messages_receipt_handle", table_name="task_queue_messages")
    op.drop_index("ix_task_queue_messages_status", table_name="task_queue_messages")
    op.drop_index("ix_task_queue_messages_session_id", table_name="task_queue_messages")
    op.drop_index("ix_task_queue_messages_queue_name", table_name="task_queue_messages")
    op.drop_table("task_queue_messages")
    op.drop_index("idx_orchestration_events_session_order", table_name="orchestration_events")
    op.drop_index("ix_orchestration_events_event_type", table_name="orchestration_events")
    op.drop_index("ix_orchestration_events_session_id", table_name="orchestration_events")
    op.drop_table("orchestration_events")
    op.drop_index(
        "idx_orchestration_sessions_status_created",
        table_name="orchestration_sessions",
    )
    op.drop_index("ix_orchestration_sessions_claimed_by", table_name="orchestration_sessions")
    op.drop_index("ix_orchestration_sessions_status", table_name="orchestration_sessions")
    op.drop_table("orchestration_sessions")
