from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

import allure
import pytest
from conftest import VISIBILITY_TIMEOUT_SECONDS, Runtime

from session_orchestrator.orchestrator.backend import echo_step
from session_orchestrator.orchestrator.errors import FatalStepFailure, TransientStepFailure
from session_orchestrator.orchestrator.models import ChatMessage, EventType, SessionStatus
from session_orchestrator.orchestrator.stepping import StepContext, StepEvent, StepResult
from session_orchestrator.orchestrator.worker import DeliveryOutcome, SessionWorker

pytestmark = [
    allure.epic("Orchestration Runtime"),
    allure.feature("Worker Delivery Handling"),
]

MakeWorker = Callable[..., SessionWorker]


class WorkerCrashed(BaseException):
    """Simulates the worker process dying mid-step."""


def calculator_step(context: StepContext) -> StepResult:
    return StepResult(
        events=[
            StepEvent(EventType.TOOL_CALL, {"tool": "calculator", "arguments": {"expr": "6*7"}}),
            StepEvent(EventType.TOOL_RESULT, {"tool": "calculator", "result": 42}),
            StepEvent(EventType.STATUS_UPDATE, {"message": "Answer ready"}),
        ],
        messages=[ChatMessage(role="assistant", content="42")],
        done=True,
        final_response="42",
    )


def event_types(runtime: Runtime, session_id: str) -> list[EventType]:
    return [event.event_type for event in runtime.event_log.list(session_id)]


@allure.story("Happy path")
def test_worker_completes_session_with_step_events_only(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, message_id = runtime.submit("What is 6 * 7?")
    worker = make_worker(calculator_step)

    summary = worker.run_once()

    assert summary.received == 1
    assert summary.completed == 1
    completed = runtime.store.get(session.session_id)
    assert completed.status == SessionStatus.COMPLETED
    assert completed.final_response == "42"
    assert completed.error is None
    assert completed.execution_count == 1
    assert [m.content for m in completed.messages] == ["What is 6 * 7?", "42"]
    assert event_types(runtime, session.session_id) == [
        EventType.TOOL_CALL,
        EventType.TOOL_RESULT,
        EventType.STATUS_UPDATE,
    ]
    assert runtime.queue.get_message(message_id) is None


@allure.story("Crash recovery")
def test_redelivery_after_lease_expiry_takes_over_and_stale_worker_is_ignored(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, message_id = runtime.submit()
    rescuer = make_worker(calculator_step, worker_id="worker-2")
    rescue_summaries = []

    def stalled_step(context: StepContext) -> StepResult:
        runtime.clock.advance(VISIBILITY_TIMEOUT_SECONDS + 1)
        rescue_summaries.append(rescuer.run_once())
        return StepResult(
            events=[StepEvent(EventType.THINKING, {"content": "late thought"})],
            done=True,
            final_response="late answer",
        )

    stalled = make_worker(stalled_step, worker_id="worker-1")
    summary = stalled.run_once()

    assert summary.stale == 1
    assert rescue_summaries[0].completed == 1
    final = runtime.store.get(session.session_id)
    assert final.status == SessionStatus.COMPLETED
    assert final.final_response == "42"
    assert final.execution_count == 2
    assert final.claimed_by == "worker-2"
    assert EventType.THINKING not in event_types(runtime, session.session_id)
    assert runtime.queue.get_message(message_id) is None


@allure.story("Crash recovery")
def test_crashed_worker_leaves_message_for_redelivery(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, message_id = runtime.submit()

    def crashing_step(context: StepContext) -> StepResult:
        raise WorkerCrashed

    with pytest.raises(WorkerCrashed):
        make_worker(crashing_step).run_once()

    assert runtime.store.get(session.session_id).status == SessionStatus.RUNNING
    assert runtime.queue.receive() is None

    runtime.clock.advance(VISIBILITY_TIMEOUT_SECONDS)
    summary = make_worker(calculator_step, worker_id="worker-2").run_once()

    assert summary.completed == 1
    final = runtime.store.get(session.session_id)
    assert final.status == SessionStatus.COMPLETED
    assert final.execution_count == 2
    assert runtime.queue.get_message(message_id) is None


@allure.story("Crash recovery")
def test_crash_after_progress_is_still_taken_over_on_redelivery(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, message_id = runtime.submit()
    start = runtime.clock.now

    def progress_then_crash(context: StepContext) -> StepResult:
        if context.step_index == 0:
            runtime.clock.advance(400)
            return StepResult(
                events=[StepEvent(EventType.THINKING, {"content": "halfway"})],
                messages=[ChatMessage(role="assistant", content="working on it")],
            )
        raise WorkerCrashed

    with pytest.raises(WorkerCrashed):
        make_worker(progress_then_crash, worker_id="worker-1").run_once()

    crashed = runtime.store.get(session.session_id)
    assert crashed.status == SessionStatus.RUNNING
    assert crashed.heartbeat_at == start

    runtime.clock.advance(VISIBILITY_TIMEOUT_SECONDS - 400)
    summary = make_worker(calculator_step, worker_id="worker-2").run_once()

    assert summary.received == 1
    assert summary.completed == 1
    assert summary.dropped == 0
    final = runtime.store.get(session.session_id)
    assert final.status == SessionStatus.COMPLETED
    assert final.execution_count == 2
    assert final.claimed_by == "worker-2"
    assert event_types(runtime, session.session_id)[0] == EventType.THINKING
    assert runtime.queue.get_message(message_id) is None


@allure.story("Retries")
def test_transient_failures_retry_in_place_then_succeed(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, _ = runtime.submit()
    attempts: list[int] = []

    def flaky_step(context: StepContext) -> StepResult:
        attempts.append(context.attempt)
        if context.attempt < 3:
            raise TransientStepFailure("rate limited")
        return calculator_step(context)

    summary = make_worker(flaky_step).run_once()

    assert attempts == [1, 2, 3]
    assert summary.completed == 1
    assert summary.retries == 2
    events = runtime.event_log.list(session.session_id)
    assert [event.event_type for event in events] == [
        EventType.RETRY,
        EventType.RETRY,
        EventType.TOOL_CALL,
        EventType.TOOL_RESULT,
        EventType.STATUS_UPDATE,
    ]
    assert [event.event_data["attempt"] for event in events[:2]] == [1, 2]
    assert events[0].event_data["reason"] == "rate limited"
    assert events[0].event_data["max_retries"] == 3
    assert runtime.store.get(session.session_id).final_response == "42"


@allure.story("Retries")
def test_retry_bound_exhaustion_fails_session_and_acknowledges(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, message_id = runtime.submit()

    def always_transient(context: StepContext) -> StepResult:
        raise TransientStepFailure("upstream timeout")

    summary = make_worker(always_transient).run_once()

    assert summary.failed == 1
    assert summary.retries == 3
    events = runtime.event_log.list(session.session_id)
    assert [event.event_type for event in events] == [
        EventType.RETRY,
        EventType.RETRY,
        EventType.RETRY,
        EventType.ERROR,
    ]
    error = events[-1].event_data
    assert error["terminal"] is True
    assert error["attempts"] == 4
    assert error["error_type"] == "TransientStepFailure"
    failed = runtime.store.get(session.session_id)
    assert failed.status == SessionStatus.FAILED
    assert failed.error == error["error"]
    assert "upstream timeout" in failed.error
    assert failed.final_response is None
    assert runtime.queue.get_message(message_id) is None


@allure.story("Duplicate delivery")
def test_duplicate_delivery_after_terminal_state_is_dropped_without_mutation(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, _ = runtime.submit()
    worker = make_worker(calculator_step)
    worker.run_once()
    before = runtime.store.get(session.session_id)
    before_events = runtime.event_log.list(session.session_id)

    duplicate_id = runtime.queue.publish(session.session_id)
    runtime.clock.advance(30)
    summary = worker.run_once()

    assert summary.dropped == 1
    assert runtime.store.get(session.session_id) == before
    assert runtime.event_log.list(session.session_id) == before_events
    assert runtime.queue.get_message(duplicate_id) is None


@allure.story("Duplicate delivery")
def test_duplicate_delivery_while_claim_is_live_is_dropped(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, _ = runtime.submit()
    runtime.store.claim(session.session_id, worker_id="worker-0", lease_seconds=900)

    summary = make_worker(calculator_step).run_once()

    assert summary.dropped == 1
    current = runtime.store.get(session.session_id)
    assert current.status == SessionStatus.RUNNING
    assert current.claimed_by == "worker-0"
    assert current.execution_count == 1
    assert runtime.queue.depth() == 0


def test_delivery_for_unknown_session_is_dropped(runtime: Runtime, make_worker: MakeWorker) -> None:
    message_id = runtime.queue.publish("no-such-session")
    worker = make_worker(calculator_step)
    message = runtime.queue.receive()
    assert message is not None

    assert worker.process(message) == DeliveryOutcome.DROPPED
    assert runtime.queue.get_message(message_id) is None


@allure.story("Failures")
def test_fatal_step_failure_fails_without_retry(runtime: Runtime, make_worker: MakeWorker) -> None:
    session, _ = runtime.submit()

    def fatal_step(context: StepContext) -> StepResult:
        raise FatalStepFailure("tool rejected the request")

    summary = make_worker(fatal_step).run_once()

    assert summary.failed == 1
    assert summary.retries == 0
    events = runtime.event_log.list(session.session_id)
    assert [event.event_type for event in events] == [EventType.ERROR]
    assert events[0].event_data == {
        "error": "tool rejected the request",
        "error_type": "FatalStepFailure",
        "terminal": True,
        "attempts": 1,
    }
    assert runtime.store.get(session.session_id).error == "tool rejected the request"


@allure.story("Failures")
def test_unexpected_exception_is_fatal(runtime: Runtime, make_worker: MakeWorker) -> None:
    session, _ = runtime.submit()

    def broken_step(context: StepContext) -> StepResult:
        raise RuntimeError("kaboom")

    make_worker(broken_step).run_once()

    failed = runtime.store.get(session.session_id)
    assert failed.status == SessionStatus.FAILED
    assert failed.error == "RuntimeError: kaboom"
    assert runtime.event_log.list(session.session_id)[-1].event_data["error_type"] == "RuntimeError"


@allure.story("Failures")
def test_invalid_event_payload_fails_session(runtime: Runtime, make_worker: MakeWorker) -> None:
    session, _ = runtime.submit()

    def sloppy_step(context: StepContext) -> StepResult:
        return StepResult(
            events=[StepEvent(EventType.TOOL_CALL, {"arguments": {"q": "x"}})],
            done=True,
            final_response="x",
        )

    make_worker(sloppy_step).run_once()

    failed = runtime.store.get(session.session_id)
    assert failed.status == SessionStatus.FAILED
    events = runtime.event_log.list(session.session_id)
    assert [event.event_type for event in events] == [EventType.ERROR]
    assert events[0].event_data["error_type"] == "EventValidationError"


@allure.story("Failures")
def test_step_error_result_fails_session(runtime: Runtime, make_worker: MakeWorker) -> None:
    session, _ = runtime.submit()

    def giving_up(context: StepContext) -> StepResult:
        return StepResult(done=True, error="cannot answer this")

    summary = make_worker(giving_up).run_once()

    assert summary.failed == 1
    failed = runtime.store.get(session.session_id)
    assert failed.error == "cannot answer this"
    assert runtime.event_log.list(session.session_id)[-1].event_data["error_type"] == "StepError"


@allure.story("Failures")
def test_step_limit_fails_session(runtime: Runtime, make_worker: MakeWorker) -> None:
    session, _ = runtime.submit()
    steps: list[int] = []

    def endless_step(context: StepContext) -> StepResult:
        steps.append(context.step_index)
        return StepResult(events=[StepEvent(EventType.THINKING, {"content": "still thinking"})])

    make_worker(endless_step, max_steps=3).run_once()

    assert steps == [0, 1, 2]
    failed = runtime.store.get(session.session_id)
    assert failed.status == SessionStatus.FAILED
    assert "Step limit of 3" in (failed.error or "")
    assert event_types(runtime, session.session_id) == [
        EventType.THINKING,
        EventType.THINKING,
        EventType.THINKING,
        EventType.ERROR,
    ]


@allure.story("Context")
def test_oversized_context_is_compacted_before_step(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    history = [
        ChatMessage(role="system", content="You are a calculator."),
        ChatMessage(role="user", content="What is 6 * 7?"),
    ]
    for index in range(5):
        history.append(ChatMessage(role="assistant", content=f"thinking {index}"))
        history.append(ChatMessage(role="user", content=f"follow-up {index}"))
    session = runtime.store.create(history)
    runtime.queue.publish(session.session_id)
    seen: list[list[ChatMessage]] = []

    def recording_step(context: StepContext) -> StepResult:
        seen.append(context.messages)
        return calculator_step(context)

    make_worker(recording_step, max_context_messages=8, keep_recent_messages=3).run_once()

    context = seen[0]
    assert len(context) == 6
    assert context[0].content == "You are a calculator."
    assert context[1].content == "What is 6 * 7?"
    assert context[2].role == "system"
    assert (context[2].content or "").startswith("Previous conversation summary:")
    assert [m.content for m in context[3:]] == ["follow-up 3", "thinking 4", "follow-up 4"]

    events = runtime.event_log.list(session.session_id)
    assert events[0].event_type == EventType.CONTEXT_COMPRESSION
    assert events[0].event_data == {
        "original_message_count": 12,
        "compressed_message_count": 6,
        "summary_added": True,
        "messages_kept": {"system": True, "first_user": True, "recent": 3},
    }
    stored = runtime.store.get(session.session_id).messages
    assert len(stored) == 7
    assert stored[-1].content == "42"


@allure.story("Visibility")
def test_long_running_session_extends_visibility_and_heartbeat(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, message_id = runtime.submit()
    observed: list[tuple[datetime, datetime | None]] = []

    def slow_step(context: StepContext) -> StepResult:
        message = runtime.queue.get_message(message_id)
        assert message is not None
        observed.append(
            (message.visible_after, runtime.store.get(session.session_id).heartbeat_at),
        )
        if context.step_index < 2:
            runtime.clock.advance(500)
            return StepResult(events=[StepEvent(EventType.THINKING, {"content": "working"})])
        return calculator_step(context)

    start = runtime.clock.now
    summary = make_worker(slow_step).run_once()

    assert summary.completed == 1
    window = timedelta(seconds=VISIBILITY_TIMEOUT_SECONDS)
    assert observed[0][0] == start + window
    assert observed[1] == (start + timedelta(seconds=500) + window, start + timedelta(seconds=500))
    assert observed[2][0] == start + timedelta(seconds=1000) + window
    assert runtime.queue.get_message(message_id) is None


class RecordingConversationStore:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.delivered: list[tuple[str, str, str]] = []

    def load_messages(self, thread_id: str) -> list[ChatMessage]:
        return [ChatMessage(role="user", content=f"question from {thread_id}")]

    def deliver_final_response(self, thread_id: str, session_id: str, final_response: str) -> None:
        if self.fail:
            raise ConnectionError("thread service unavailable")
        self.delivered.append((thread_id, session_id, final_response))


@allure.story("Conversation store")
def test_final_response_is_delivered_to_thread(runtime: Runtime, make_worker: MakeWorker) -> None:
    conversation_store = RecordingConversationStore()
    session, _ = runtime.submit(thread_id="thread-7")

    make_worker(calculator_step, conversation_store=conversation_store).run_once()

    assert conversation_store.delivered == [("thread-7", session.session_id, "42")]


@allure.story("Conversation store")
def test_delivery_failure_does_not_undo_completion(
    runtime: Runtime,
    make_worker: MakeWorker,
    caplog: pytest.LogCaptureFixture,
) -> None:
    session, message_id = runtime.submit(thread_id="thread-7")

    summary = make_worker(
        calculator_step,
        conversation_store=RecordingConversationStore(fail=True),
    ).run_once()

    assert summary.completed == 1
    assert runtime.store.get(session.session_id).status == SessionStatus.COMPLETED
    assert runtime.queue.get_message(message_id) is None
    assert f"Delivering final response of session {session.session_id}" in caplog.text


@allure.story("Built-in steppers")
def test_echo_step_completes_with_tool_round_trip(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, _ = runtime.submit("  hello there  ")

    make_worker(echo_step).run_once()

    completed = runtime.store.get(session.session_id)
    assert completed.final_response == "hello there"
    events = runtime.event_log.list(session.session_id)
    assert [event.event_type for event in events] == [
        EventType.TOOL_CALL,
        EventType.TOOL_RESULT,
        EventType.STATUS_UPDATE,
    ]
    assert events[0].event_data["tool_call_id"] == "echo-1-0"
    assert events[1].event_data["result"] == "hello there"


@allure.story("Built-in steppers")
def test_echo_step_panel_creates_agents_then_discusses(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    session, _ = runtime.submit("ship it?", panel=["Optimist", "Skeptic"])

    make_worker(echo_step).run_once()

    completed = runtime.store.get(session.session_id)
    assert completed.final_response == "Optimist: ship it?\nSkeptic: ship it?"
    events = runtime.event_log.list(session.session_id)
    assert [event.event_type for event in events] == [
        EventType.AGENT_CREATED,
        EventType.AGENT_CREATED,
        EventType.DISCUSSION_TURN,
        EventType.DISCUSSION_TURN,
        EventType.STATUS_UPDATE,
    ]
    assert [event.event_data["agent_id"] for event in events[2:4]] == ["agent-1", "agent-2"]


def test_run_loop_drains_queue_then_exits_when_idle(
    runtime: Runtime,
    make_worker: MakeWorker,
) -> None:
    first, _ = runtime.submit("one")
    second, _ = runtime.submit("two")

    summary = make_worker(echo_step).run_loop(max_idle_polls=1)

    assert summary.received == 2
    assert summary.completed == 2
    assert summary.idle_polls == 1
    assert runtime.store.get(first.session_id).final_response == "one"
    assert runtime.store.get(second.session_id).final_response == "two"


def test_run_loop_respects_max_messages(runtime: Runtime, make_worker: MakeWorker) -> None:
    runtime.submit("one")
    runtime.submit("two")

    summary = make_worker(echo_step).run_loop(max_messages=1, max_idle_polls=None)

    assert summary.received == 1
    assert runtime.queue.depth() == 1


def test_stop_request_leaves_messages_queued(runtime: Runtime, make_worker: MakeWorker) -> None:
    session, _ = runtime.submit()
    worker = make_worker(echo_step)
    worker.stop.request()

    summary = worker.run_loop(max_idle_polls=None)

    assert summary.received == 0
    assert runtime.store.get(session.session_id).status == SessionStatus.QUEUED
    assert runtime.queue.depth() == 1
