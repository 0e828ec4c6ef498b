"""Error taxonomy for the orchestration runtime."""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for orchestration runtime errors."""


class SessionNotFound(OrchestrationError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class InvalidSessionInput(OrchestrationError, ValueError):
    """Dispatcher input rejected before a session is created."""


class EventValidationError(OrchestrationError, ValueError):
    """Event payload does not match the shape of its event type."""


class TransientStepFailure(OrchestrationError):
    """Step failed in a way worth re-attempting in place."""


class FatalStepFailure(OrchestrationError):
    """Step failed in a way that must abort the session."""


class ClaimConflict(OrchestrationError):
    """Another delivery already holds (or resolved) the session claim."""

    def __init__(self, session_id: str, reason: str) -> None:
        super().__init__(f"Claim conflict for session {session_id}: {reason}")
        self.session_id = session_id
        self.reason = reason


class StaleFinalize(OrchestrationError):
    """A worker tried to act on a session claim it no longer holds."""

    def __init__(self, session_id: str, reason: str) -> None:
        super().__init__(f"Stale claim for session {session_id}: {reason}")
        self.session_id = session_id
        self.reason = reason


class QueueRedeliveryExhausted(OrchestrationError):
    """Message exceeded its maximum receive count and was dead-lettered."""

    def __init__(self, message_id: str, session_id: str, receive_count: int) -> None:
        super().__init__(
            f"Message {message_id} for session {session_id} dead-lettered "
            f"after {receive_count} receives",
        )
        self.message_id = message_id
        self.session_id = session_id
        self.receive_count = receive_count


class WatchdogTimeout(OrchestrationError):
    """Session exceeded its maximum age without resolution."""

    def __init__(self, session_id: str, age_seconds: float, max_age_seconds: int) -> None:
        super().__init__(
            f"WatchdogTimeout: session {session_id} unresolved after "
            f"{int(age_seconds)}s (max {max_age_seconds}s)",
        )
        self.session_id = session_id
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
