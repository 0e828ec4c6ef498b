"""Queue worker that drives sessions through the stepping function."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from session_orchestrator.orchestrator.compaction import compact_messages
from session_orchestrator.orchestrator.errors import (
    ClaimConflict,
    EventValidationError,
    FatalStepFailure,
    SessionNotFound,
    StaleFinalize,
    TransientStepFailure,
)
from session_orchestrator.orchestrator.event_log import EventLog
from session_orchestrator.orchestrator.lifecycle import GracefulStop
from session_orchestrator.orchestrator.models import (
    ChatMessage,
    EventType,
    ReceivedMessage,
    SessionView,
)
from session_orchestrator.orchestrator.session_store import SessionStore
from session_orchestrator.orchestrator.stepping import (
    ConversationStore,
    StepContext,
    StepFunction,
    StepResult,
)
from session_orchestrator.orchestrator.task_queue import TaskQueue
from session_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DROPPED = "dropped"
    STALE = "stale"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    received: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0
    stale: int = 0
    retries: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.received += other.received
        self.completed += other.completed
        self.failed += other.failed
        self.dropped += other.dropped
        self.stale += other.stale
        self.retries += other.retries
        self.idle_polls += other.idle_polls


class _StepAborted(Exception):
    def __init__(self, error: str, *, error_type: str, attempts: int) -> None:
        super().__init__(error)
        self.error = error
        self.error_type = error_type
        self.attempts = attempts


@dataclass(slots=True)
class _Delivery:
    message: ReceivedMessage
    session: SessionView
    execution_count: int
    messages: list[ChatMessage]
    last_renewal: datetime
    retries: int = 0


class SessionWorker:
    """Receives queue messages, claims sessions and runs them to a terminal state."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: SessionStore,
        event_log: EventLog,
        queue: TaskQueue,
        step_function: StepFunction,
        worker_id: str,
        conversation_store: ConversationStore | None = None,
        visibility_timeout_seconds: float = 900,
        lease_seconds: float | None = None,
        step_retry_limit: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
        max_steps: int = 50,
        max_context_messages: int = 40,
        keep_recent_messages: int = 10,
        poll_interval_seconds: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.event_log = event_log
        self.queue = queue
        self.step_function = step_function
        self.worker_id = worker_id
        self.conversation_store = conversation_store
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.lease_seconds = (
            lease_seconds if lease_seconds is not None else visibility_timeout_seconds
        )
        self.step_retry_limit = step_retry_limit
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.max_steps = max_steps
        self.max_context_messages = max_context_messages
        self.keep_recent_messages = keep_recent_messages
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock
        self._random = random.Random()  # noqa: S311
        self.stop = GracefulStop(name=f"Worker {worker_id}")

    def run_once(self) -> WorkerRunSummary:
        """Receive and process at most one message."""

        summary = WorkerRunSummary()
        if self.stop.requested:
            summary.idle_polls = 1
            return summary

        message = self.queue.receive(visibility_timeout_seconds=self.visibility_timeout_seconds)
        if message is None:
            summary.idle_polls = 1
            return summary

        summary.received = 1
        outcome = self.process(message, summary=summary)
        if outcome == DeliveryOutcome.COMPLETED:
            summary.completed = 1
        elif outcome == DeliveryOutcome.FAILED:
            summary.failed = 1
        elif outcome == DeliveryOutcome.DROPPED:
            summary.dropped = 1
        else:
            summary.stale = 1
        return summary

    def run_loop(
        self,
        *,
        max_messages: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until idle, stopped by a signal, or ``max_messages`` are handled.

        Args:
            max_messages: Stop after receiving this many messages (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self.stop.handlers():
            while True:
                if self.stop.requested:
                    return aggregate
                if max_messages is not None and aggregate.received >= max_messages:
                    return aggregate

                summary = self.run_once()
                aggregate.merge(summary)

                if summary.received == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self.stop.sleep(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def process(
        self,
        message: ReceivedMessage,
        *,
        summary: WorkerRunSummary | None = None,
    ) -> DeliveryOutcome:
        """Handle one delivery end to end."""

        try:
            session = self.store.claim(
                message.session_id,
                worker_id=self.worker_id,
                lease_seconds=self.lease_seconds,
                heartbeat_at=message.received_at,
            )
        except ClaimConflict as conflict:
            logger.info("Dropping delivery %s: %s", message.message_id, conflict.reason)
            self._acknowledge(message)
            return DeliveryOutcome.DROPPED
        except SessionNotFound:
            logger.error(
                "Dropping delivery %s for unknown session %s",
                message.message_id,
                message.session_id,
            )
            self._acknowledge(message)
            return DeliveryOutcome.DROPPED

        logger.info(
            "Worker %s claimed session %s (execution %s, receive %s)",
            self.worker_id,
            session.session_id,
            session.execution_count,
            message.receive_count,
        )
        delivery = _Delivery(
            message=message,
            session=session,
            execution_count=session.execution_count,
            messages=list(session.messages),
            last_renewal=message.received_at,
        )
        try:
            return self._run_claimed(delivery)
        except StaleFinalize as stale:
            logger.warning(
                "Worker %s lost session %s, abandoning delivery: %s",
                self.worker_id,
                session.session_id,
                stale.reason,
            )
            return DeliveryOutcome.STALE
        finally:
            if summary is not None:
                summary.retries += delivery.retries

    def _run_claimed(self, delivery: _Delivery) -> DeliveryOutcome:
        session_id = delivery.session.session_id
        for step_index in range(self.max_steps):
            self._renew_if_due(delivery)
            self._compact_if_needed(delivery)
            attempts = 1
            try:
                result, attempts = self._run_step(delivery, step_index=step_index)
                for event in result.events:
                    self.event_log.append(
                        session_id,
                        event.event_type,
                        event.data,
                        execution_count=delivery.execution_count,
                    )
            except _StepAborted as aborted:
                return self._fail(
                    delivery,
                    error=aborted.error,
                    error_type=aborted.error_type,
                    attempts=aborted.attempts,
                )
            except EventValidationError as error:
                return self._fail(
                    delivery,
                    error=str(error),
                    error_type=type(error).__name__,
                    attempts=attempts,
                )

            if result.messages:
                delivery.messages.extend(result.messages)
                self.store.update_messages(
                    session_id,
                    delivery.messages,
                    execution_count=delivery.execution_count,
                )
            if not result.done:
                continue
            if result.error is not None:
                return self._fail(
                    delivery,
                    error=result.error,
                    error_type="StepError",
                    attempts=attempts,
                )
            return self._complete(delivery, final_response=result.final_response or "")

        return self._fail(
            delivery,
            error=f"Step limit of {self.max_steps} reached without a final response",
            error_type="StepLimitExceeded",
            attempts=1,
        )

    def _run_step(self, delivery: _Delivery, *, step_index: int) -> tuple[StepResult, int]:
        session_id = delivery.session.session_id
        attempt = 1
        while True:
            context = StepContext(
                session_id=session_id,
                execution_count=delivery.execution_count,
                step_index=step_index,
                attempt=attempt,
                messages=list(delivery.messages),
                metadata=dict(delivery.session.metadata),
            )
            try:
                result = self.step_function(context)
            except TransientStepFailure as failure:
                if attempt > self.step_retry_limit:
                    raise _StepAborted(
                        f"Step {step_index} still failing after "
                        f"{self.step_retry_limit} retries: {failure}",
                        error_type=type(failure).__name__,
                        attempts=attempt,
                    ) from failure
                delay = self._compute_retry_delay(retry_number=attempt)
                self.event_log.append(
                    session_id,
                    EventType.RETRY,
                    {
                        "reason": str(failure) or type(failure).__name__,
                        "attempt": attempt,
                        "max_retries": self.step_retry_limit,
                        "delay_seconds": round(delay, 3),
                    },
                    execution_count=delivery.execution_count,
                )
                delivery.retries += 1
                logger.info(
                    "Retrying step %s of session %s in %.2fs (attempt %s/%s): %s",
                    step_index,
                    session_id,
                    delay,
                    attempt,
                    self.step_retry_limit,
                    failure,
                )
                self.stop.sleep(delay)
                self._renew_if_due(delivery)
                attempt += 1
                continue
            except FatalStepFailure as failure:
                raise _StepAborted(
                    str(failure) or type(failure).__name__,
                    error_type=type(failure).__name__,
                    attempts=attempt,
                ) from failure
            except Exception as error:  # noqa: BLE001
                logger.exception("Step function raised for session %s", session_id)
                raise _StepAborted(
                    f"{type(error).__name__}: {error}",
                    error_type=type(error).__name__,
                    attempts=attempt,
                ) from error

            if not isinstance(result, StepResult):
                raise _StepAborted(
                    f"Step function returned {type(result).__name__}, expected StepResult",
                    error_type="InvalidStepResult",
                    attempts=attempt,
                )
            return result, attempt

    def _complete(self, delivery: _Delivery, *, final_response: str) -> DeliveryOutcome:
        session_id = delivery.session.session_id
        self.store.finalize(
            session_id,
            final_response,
            execution_count=delivery.execution_count,
        )
        logger.info("Session %s completed by worker %s", session_id, self.worker_id)
        self._deliver_final_response(delivery, final_response=final_response)
        self._acknowledge(delivery.message)
        return DeliveryOutcome.COMPLETED

    def _fail(
        self,
        delivery: _Delivery,
        *,
        error: str,
        error_type: str,
        attempts: int,
    ) -> DeliveryOutcome:
        session_id = delivery.session.session_id
        self.event_log.append(
            session_id,
            EventType.ERROR,
            {"error": error, "error_type": error_type, "terminal": True, "attempts": attempts},
            execution_count=delivery.execution_count,
        )
        self.store.fail(session_id, error, execution_count=delivery.execution_count)
        logger.warning("Session %s failed (%s): %s", session_id, error_type, error)
        self._acknowledge(delivery.message)
        return DeliveryOutcome.FAILED

    def _compact_if_needed(self, delivery: _Delivery) -> None:
        compacted = compact_messages(
            delivery.messages,
            max_messages=self.max_context_messages,
            keep_recent=self.keep_recent_messages,
        )
        if compacted is None:
            return
        session_id = delivery.session.session_id
        self.event_log.append(
            session_id,
            EventType.CONTEXT_COMPRESSION,
            compacted.event_data(),
            execution_count=delivery.execution_count,
        )
        delivery.messages = compacted.messages
        self.store.update_messages(
            session_id,
            delivery.messages,
            execution_count=delivery.execution_count,
        )
        logger.info(
            "Compacted session %s context from %s to %s messages",
            session_id,
            compacted.original_message_count,
            len(compacted.messages),
        )

    def _renew_if_due(self, delivery: _Delivery) -> None:
        now = self.clock()
        elapsed = (now - delivery.last_renewal).total_seconds()
        if elapsed < self.visibility_timeout_seconds / 2:
            return
        self.store.heartbeat(
            delivery.session.session_id,
            execution_count=delivery.execution_count,
        )
        if not self.queue.extend(delivery.message.receipt_handle, self.visibility_timeout_seconds):
            logger.warning(
                "Could not extend visibility of message %s for session %s",
                delivery.message.message_id,
                delivery.session.session_id,
            )
        delivery.last_renewal = now

    def _deliver_final_response(self, delivery: _Delivery, *, final_response: str) -> None:
        if self.conversation_store is None:
            return
        thread_id = delivery.session.metadata.get("thread_id")
        if not thread_id:
            return
        try:
            self.conversation_store.deliver_final_response(
                str(thread_id),
                delivery.session.session_id,
                final_response,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "Delivering final response of session %s to thread %s failed",
                delivery.session.session_id,
                thread_id,
            )

    def _acknowledge(self, message: ReceivedMessage) -> None:
        if not self.queue.acknowledge(message.receipt_handle):
            logger.warning(
                "Receipt for message %s expired before acknowledgement",
                message.message_id,
            )

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

