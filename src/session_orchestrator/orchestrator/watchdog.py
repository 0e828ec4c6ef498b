"""External watchdog for sessions and messages nobody will resolve on their own.

A worker process can vanish mid-run. The queue then redelivers until its
receive budget is spent and the message is dead-lettered, leaving the session
in its last claimed status. The watchdog is the second timeout layer: it fails
sessions past their maximum age, reports running sessions whose heartbeat went
stale, and surfaces every dead letter exactly once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from session_orchestrator.orchestrator.errors import SessionNotFound, WatchdogTimeout
from session_orchestrator.orchestrator.lifecycle import GracefulStop
from session_orchestrator.orchestrator.models import DeadLetterPolicy, QueueMessageView
from session_orchestrator.orchestrator.session_store import SessionStore
from session_orchestrator.orchestrator.task_queue import SqliteTaskQueue
from session_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WatchdogSummary:
    force_failed: list[str] = field(default_factory=list)
    stuck: list[str] = field(default_factory=list)
    dead_letters: list[str] = field(default_factory=list)
    redriven: list[str] = field(default_factory=list)

    def merge(self, other: WatchdogSummary) -> None:
        self.force_failed.extend(other.force_failed)
        self.stuck.extend(other.stuck)
        self.dead_letters.extend(other.dead_letters)
        self.redriven.extend(other.redriven)


class Watchdog:
    """Periodic sweep over overdue sessions, stale claims and dead letters."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: SessionStore,
        queue: SqliteTaskQueue,
        max_session_age_seconds: float = 1800,
        lease_seconds: float = 900,
        dead_letter_policy: DeadLetterPolicy = DeadLetterPolicy.SURFACE,
        dead_letter_max_redrives: int = 1,
        batch_size: int = 100,
        interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.max_session_age_seconds = max_session_age_seconds
        self.lease_seconds = lease_seconds
        self.dead_letter_policy = dead_letter_policy
        self.dead_letter_max_redrives = dead_letter_max_redrives
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.stop = GracefulStop(name="Watchdog")

    def run_once(self) -> WatchdogSummary:
        summary = WatchdogSummary()
        self._fail_overdue(summary)
        self._report_stuck(summary)
        self._surface_dead_letters(summary)
        return summary

    def run_loop(self, *, max_cycles: int | None = None) -> WatchdogSummary:
        aggregate = WatchdogSummary()
        cycles = 0
        with self.stop.handlers():
            while not self.stop.requested:
                aggregate.merge(self.run_once())
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                self.stop.sleep(self.interval_seconds)
        return aggregate

    def _fail_overdue(self, summary: WatchdogSummary) -> None:
        now = self.clock()
        overdue = self.store.list_overdue_sessions(
            max_age_seconds=self.max_session_age_seconds,
            limit=self.batch_size,
        )
        for session in overdue:
            timeout = WatchdogTimeout(
                session.session_id,
                (now - session.created_at).total_seconds(),
                int(self.max_session_age_seconds),
            )
            if self.store.force_fail(
                session.session_id,
                str(timeout),
                max_age_seconds=self.max_session_age_seconds,
            ):
                logger.error("%s (was %s)", timeout, session.status.value)
                summary.force_failed.append(session.session_id)

    def _report_stuck(self, summary: WatchdogSummary) -> None:
        stuck = self.store.list_stuck_sessions(
            lease_seconds=self.lease_seconds,
            limit=self.batch_size,
        )
        for session in stuck:
            logger.warning(
                "Session %s is running without a heartbeat since %s (claimed by %s)",
                session.session_id,
                session.heartbeat_at.isoformat() if session.heartbeat_at else "never",
                session.claimed_by,
            )
            summary.stuck.append(session.session_id)

    def _surface_dead_letters(self, summary: WatchdogSummary) -> None:
        dead_letters = self.queue.list_dead_letters(include_alerted=False, limit=self.batch_size)
        for message in dead_letters:
            if not self.queue.mark_dead_letter_alerted(message.message_id):
                continue
            status = self._session_status(message)
            logger.error(
                "Message %s for session %s was dead-lettered (%s); session status: %s",
                message.message_id,
                message.session_id,
                message.dead_letter_reason,
                status,
            )
            summary.dead_letters.append(message.message_id)
            if self._should_redrive(message, status=status) and self.queue.redrive(
                message.message_id,
            ):
                summary.redriven.append(message.message_id)

    def _should_redrive(self, message: QueueMessageView, *, status: str) -> bool:
        if self.dead_letter_policy != DeadLetterPolicy.RESUBMIT:
            return False
        if status in {"missing", "completed", "failed"}:
            return False
        return message.redrive_count < self.dead_letter_max_redrives

    def _session_status(self, message: QueueMessageView) -> str:
        try:
            return self.store.get(message.session_id).status.value
        except SessionNotFound:
            return "missing"
