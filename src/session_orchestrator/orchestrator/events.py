"""Tagged event payload shapes keyed by the closed event type taxonomy.

Each event type owns one payload model. Required fields are validated when an
event enters the log; unknown keys are preserved so tool and agent payloads can
grow without new event types. New behaviors get a new ``EventType`` member and
a new model here rather than reusing an existing payload shape.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from session_orchestrator.orchestrator.errors import EventValidationError
from session_orchestrator.orchestrator.models import EventType


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="allow")


class ToolCallData(EventPayload):
    tool: str = Field(min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)
    tool_call_id: str | None = None


class ToolResultData(EventPayload):
    tool: str = Field(min_length=1)
    tool_call_id: str | None = None
    success: bool = True
    result: Any = None
    error: str | None = None
    duration_ms: int | None = Field(default=None, ge=0)


class VerificationData(EventPayload):
    goal: str
    achieved: bool
    confidence: float = Field(ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)


class RetryData(EventPayload):
    reason: str
    attempt: int = Field(ge=1)
    max_retries: int = Field(ge=0)
    delay_seconds: float | None = Field(default=None, ge=0.0)


class ThinkingData(EventPayload):
    content: str
    step: str | None = None


class StatusUpdateData(EventPayload):
    message: str
    phase: str | None = None
    progress: float | None = Field(default=None, ge=0.0, le=1.0)


class ErrorData(EventPayload):
    error: str
    error_type: str | None = None
    terminal: bool = False
    attempts: int | None = Field(default=None, ge=0)


class ContextCompressionData(EventPayload):
    original_message_count: int = Field(ge=0)
    compressed_message_count: int = Field(ge=0)
    summary_added: bool = False
    messages_kept: dict[str, Any] = Field(default_factory=dict)


class AgentCreatedData(EventPayload):
    agent_id: str = Field(min_length=1)
    name: str
    specification: dict[str, Any] = Field(default_factory=dict)


class AgentThoughtData(EventPayload):
    agent_id: str = Field(min_length=1)
    thought: str
    thought_type: str | None = None
    is_key_decision: bool = False


class DiscussionTurnData(EventPayload):
    agent_id: str = Field(min_length=1)
    message: str
    round: int = Field(ge=1)
    agent_name: str | None = None


EVENT_PAYLOAD_MODELS: dict[EventType, type[EventPayload]] = {
    EventType.TOOL_CALL: ToolCallData,
    EventType.TOOL_RESULT: ToolResultData,
    EventType.VERIFICATION: VerificationData,
    EventType.RETRY: RetryData,
    EventType.THINKING: ThinkingData,
    EventType.STATUS_UPDATE: StatusUpdateData,
    EventType.ERROR: ErrorData,
    EventType.CONTEXT_COMPRESSION: ContextCompressionData,
    EventType.AGENT_CREATED: AgentCreatedData,
    EventType.AGENT_THOUGHT: AgentThoughtData,
    EventType.DISCUSSION_TURN: DiscussionTurnData,
}


def parse_event_type(value: EventType | str) -> EventType:
    """Resolve a raw event type, rejecting anything outside the taxonomy."""

    if isinstance(value, EventType):
        return value
    try:
        return EventType(value)
    except ValueError as error:
        raise EventValidationError(f"Unknown event type: {value!r}") from error


def validate_event_data(event_type: EventType | str, data: dict[str, Any]) -> dict[str, Any]:
    """Validate one payload against its type and return the normalized JSON map."""

    resolved = parse_event_type(event_type)
    if not isinstance(data, dict):
        raise EventValidationError(
            f"Event data for {resolved.value} must be a mapping, got {type(data).__name__}",
        )
    model = EVENT_PAYLOAD_MODELS[resolved]
    try:
        payload = model.model_validate(data)
    except ValidationError as error:
        raise EventValidationError(
            f"Invalid {resolved.value} event data: {error.errors(include_url=False)}",
        ) from error
    return payload.model_dump(mode="json", exclude_none=True)
