"""SQLModel ORM tables for orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class OrchestrationSession(SQLModel, table=True):
    __tablename__ = "orchestration_sessions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_orchestration_sessions_status_created", "status", "created_at"),
    )

    session_id: str = Field(primary_key=True)
    status: str = Field(index=True)
    execution_count: int = Field(default=0)
    messages_json: str = Field(sa_column=Column(Text, nullable=False))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    final_response: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    claimed_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class OrchestrationEvent(SQLModel, table=True):
    __tablename__ = "orchestration_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_orchestration_events_session_order", "session_id", "created_at", "id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("orchestration_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    event_data_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskQueueMessage(SQLModel, table=True):
    __tablename__ = "task_queue_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_queue_messages_visible", "queue_name", "status", "visible_after"),
    )

    message_id: str = Field(primary_key=True)
    queue_name: str = Field(index=True)
    session_id: str = Field(index=True)
    status: str = Field(index=True)
    receive_count: int = Field(default=0)
    redrive_count: int = Field(default=0)
    visible_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    receipt_handle: str | None = Field(default=None, index=True)
    first_received_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    last_received_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    dead_lettered_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    dead_letter_reason: str | None = Field(default=None, sa_column=Column(Text))
    alerted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
