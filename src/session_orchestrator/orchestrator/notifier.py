"""Best-effort push of session snapshots and events, with poll as fallback."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from typing import TYPE_CHECKING

from session_orchestrator.orchestrator.models import EventView, SessionTrace, SessionView

if TYPE_CHECKING:
    from session_orchestrator.orchestrator.event_log import EventLog
    from session_orchestrator.orchestrator.session_store import SessionStore

logger = logging.getLogger(__name__)


class ChangeFeed:
    """In-process wakeups keyed by session id.

    Writers publish after commit; readers wait for the per-session version to
    move. Changes committed by other processes never reach this feed, which is
    why subscribers also re-poll on an interval.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._versions: dict[str, int] = {}

    def publish(self, session_id: str) -> None:
        with self._condition:
            self._versions[session_id] = self._versions.get(session_id, 0) + 1
            self._condition.notify_all()

    def version(self, session_id: str) -> int:
        with self._condition:
            return self._versions.get(session_id, 0)

    def wait(self, session_id: str, *, seen_version: int, timeout: float) -> bool:
        """Block until the session changes past ``seen_version`` or timeout."""

        with self._condition:
            return self._condition.wait_for(
                lambda: self._versions.get(session_id, 0) != seen_version,
                timeout=timeout,
            )


class StatusNotifier:
    """Streams session snapshots and events to subscribers."""

    def __init__(
        self,
        *,
        store: SessionStore,
        event_log: EventLog,
        feed: ChangeFeed,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.store = store
        self.event_log = event_log
        self.feed = feed
        self.poll_interval_seconds = poll_interval_seconds

    def notify(self, session_id: str) -> None:
        self.feed.publish(session_id)

    def poll(self, session_id: str, *, after_event_id: int | None = None) -> SessionTrace:
        """Read the durable state; always available, including after disconnects."""

        session = self.store.get(session_id)
        events = self.event_log.list(session_id, after_event_id=after_event_id)
        return SessionTrace(session=session, events=events)

    def subscribe(
        self,
        session_id: str,
        *,
        cancel: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> Iterator[SessionView | EventView]:
        """Yield snapshots and events until the session is terminal.

        The session row is read before its events, so a terminal snapshot is
        only ever yielded after every event committed before it.
        """

        deadline = time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        last_event_id: int | None = None
        last_snapshot_key: tuple[object, ...] | None = None

        while True:
            seen_version = self.feed.version(session_id)
            trace = self.poll(session_id, after_event_id=last_event_id)
            snapshot = trace.session
            snapshot_key = (
                snapshot.status,
                snapshot.execution_count,
                snapshot.updated_at,
            )
            snapshot_changed = snapshot_key != last_snapshot_key

            if snapshot_changed and not snapshot.is_terminal:
                last_snapshot_key = snapshot_key
                yield snapshot
            for event in trace.events:
                # Events arrive in created_at order; the cursor filters on id.
                if last_event_id is None or event.event_id > last_event_id:
                    last_event_id = event.event_id
                yield event
            if snapshot.is_terminal:
                if snapshot_changed:
                    yield snapshot
                return

            if cancel is not None and cancel.is_set():
                logger.debug("Subscription to session %s cancelled", session_id)
                return
            wait_seconds = self.poll_interval_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.debug("Subscription to session %s timed out", session_id)
                    return
                wait_seconds = min(wait_seconds, remaining)
            self.feed.wait(session_id, seen_version=seen_version, timeout=wait_seconds)
