"""Session creation and hand-off to the task queue."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from session_orchestrator.orchestrator.errors import InvalidSessionInput
from session_orchestrator.orchestrator.lifecycle import GracefulStop
from session_orchestrator.orchestrator.models import KNOWN_MESSAGE_ROLES, ChatMessage, SessionView
from session_orchestrator.orchestrator.session_store import SessionStore
from session_orchestrator.orchestrator.stepping import ConversationStore
from session_orchestrator.orchestrator.task_queue import TaskQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatcherRunSummary:
    cycles: int = 0
    republished: int = 0


class Dispatcher:
    """Creates pending sessions, publishes them and marks them queued."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: SessionStore,
        queue: TaskQueue,
        conversation_store: ConversationStore | None = None,
        republish_after_seconds: float = 60.0,
        republish_batch_size: int = 100,
        poll_interval_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.queue = queue
        self.conversation_store = conversation_store
        self.republish_after_seconds = republish_after_seconds
        self.republish_batch_size = republish_batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.stop = GracefulStop(name="Dispatcher")

    def dispatch(
        self,
        messages: Sequence[ChatMessage | Mapping[str, Any]],
        metadata: dict[str, Any] | None = None,
    ) -> SessionView:
        """Validate input and hand a new session to the queue."""

        validated = validate_messages(messages)
        session = self.store.create(validated, metadata)
        self._publish(session.session_id)
        logger.info("Dispatched session %s", session.session_id)
        return self.store.get(session.session_id)

    def dispatch_thread(
        self,
        thread_id: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> SessionView:
        """Dispatch a session over a thread's stored conversation."""

        if self.conversation_store is None:
            raise InvalidSessionInput("No conversation store configured for thread dispatch.")
        messages = self.conversation_store.load_messages(thread_id)
        return self.dispatch(messages, {**(metadata or {}), "thread_id": thread_id})

    def publish_pending(
        self,
        *,
        older_than_seconds: float | None = None,
        limit: int | None = None,
    ) -> int:
        """Re-publish sessions left pending, e.g. after a crash before publish."""

        pending = self.store.list_pending_sessions(
            older_than_seconds=(
                older_than_seconds
                if older_than_seconds is not None
                else self.republish_after_seconds
            ),
            limit=limit if limit is not None else self.republish_batch_size,
        )
        for session in pending:
            logger.warning("Re-publishing session %s left pending", session.session_id)
            self._publish(session.session_id)
        return len(pending)

    def run_loop(self, *, max_cycles: int | None = None) -> DispatcherRunSummary:
        """Sweep pending sessions on an interval until stopped."""

        summary = DispatcherRunSummary()
        with self.stop.handlers():
            while not self.stop.requested:
                summary.republished += self.publish_pending()
                summary.cycles += 1
                if max_cycles is not None and summary.cycles >= max_cycles:
                    break
                self.stop.sleep(self.poll_interval_seconds)
        return summary

    def _publish(self, session_id: str) -> None:
        self.queue.publish(session_id)
        if not self.store.mark_queued(session_id):
            logger.debug("Session %s left pending before it was marked queued", session_id)


def validate_messages(
    messages: Sequence[ChatMessage | Mapping[str, Any]],
) -> list[ChatMessage]:
    """Normalize dispatcher input, rejecting unusable conversations."""

    if not messages:
        raise InvalidSessionInput("A session needs at least one message.")
    validated: list[ChatMessage] = []
    for index, raw in enumerate(messages):
        message = raw if isinstance(raw, ChatMessage) else ChatMessage.from_dict(dict(raw))
        if message.role not in KNOWN_MESSAGE_ROLES:
            raise InvalidSessionInput(f"Message {index} has unknown role {message.role!r}.")
        if message.content is not None and not isinstance(message.content, str):
            raise InvalidSessionInput(f"Message {index} content must be a string.")
        validated.append(message)
    if not any(message.role == "user" and message.content for message in validated):
        raise InvalidSessionInput("A session needs at least one non-empty user message.")
    return validated
