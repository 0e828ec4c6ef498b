"""Domain models for orchestration sessions, events and queue messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

KNOWN_MESSAGE_ROLES = frozenset({"system", "user", "assistant", "tool"})


class SessionStatus(str, Enum):
    """Durable session lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})
CLAIMABLE_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.QUEUED})


class EventType(str, Enum):
    """Closed taxonomy of orchestration trace events."""

    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    VERIFICATION = "verification"
    RETRY = "retry"
    THINKING = "thinking"
    STATUS_UPDATE = "status_update"
    ERROR = "error"
    CONTEXT_COMPRESSION = "context_compression"
    AGENT_CREATED = "agent_created"
    AGENT_THOUGHT = "agent_thought"
    DISCUSSION_TURN = "discussion_turn"


class QueueMessageStatus(str, Enum):
    AVAILABLE = "available"
    DEAD_LETTERED = "dead_lettered"


class DeadLetterPolicy(str, Enum):
    """What the watchdog does with dead-lettered messages besides alerting."""

    SURFACE = "surface"
    RESUBMIT = "resubmit"


@dataclass(slots=True)
class ChatMessage:
    """One `{role, content}` entry of a session's ordered context."""

    role: str
    content: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ChatMessage:
        return cls(role=str(payload.get("role", "")), content=payload.get("content"))


@dataclass(slots=True)
class SessionView:
    """Readable session snapshot."""

    session_id: str
    status: SessionStatus
    execution_count: int
    messages: list[ChatMessage]
    metadata: dict[str, Any]
    final_response: str | None
    error: str | None
    claimed_by: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True)
class EventView:
    """Append-only trace entry."""

    event_id: int
    session_id: str
    event_type: EventType
    event_data: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class SessionTrace:
    """Session snapshot with its ordered event stream."""

    session: SessionView
    events: list[EventView] = field(default_factory=list)


@dataclass(slots=True)
class QueueMessageView:
    """Stored queue message, including dead-letter bookkeeping."""

    message_id: str
    queue_name: str
    session_id: str
    status: QueueMessageStatus
    receive_count: int
    redrive_count: int
    visible_after: datetime
    receipt_handle: str | None
    first_received_at: datetime | None
    last_received_at: datetime | None
    dead_lettered_at: datetime | None
    dead_letter_reason: str | None
    alerted_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ReceivedMessage:
    """One delivery of a queue message; the receipt handle identifies it."""

    message_id: str
    session_id: str
    receipt_handle: str
    receive_count: int
    received_at: datetime
    visible_until: datetime
