"""Controllers for orchestration CLI commands."""

from __future__ import annotations

import json
import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from session_orchestrator.config import Settings
from session_orchestrator.orchestrator.dispatcher import Dispatcher
from session_orchestrator.orchestrator.event_log import EventLog
from session_orchestrator.orchestrator.models import (
    ChatMessage,
    DeadLetterPolicy,
    EventView,
    SessionStatus,
    SessionView,
)
from session_orchestrator.orchestrator.notifier import ChangeFeed, StatusNotifier
from session_orchestrator.orchestrator.session_store import SessionStore
from session_orchestrator.orchestrator.stepping import load_step_function
from session_orchestrator.orchestrator.task_queue import SqliteTaskQueue
from session_orchestrator.orchestrator.watchdog import Watchdog
from session_orchestrator.orchestrator.worker import SessionWorker
from session_orchestrator.storage.database import OrchestrationDatabase


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for dispatching a new session."""

    db_path: Path | None
    prompt: str
    system_prompt: str | None = None
    metadata: tuple[str, ...] = ()
    panel: tuple[str, ...] = ()


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_messages: int | None = None
    max_idle_polls: int | None = 1
    worker_id: str | None = None
    step_function: str | None = None


@dataclass(slots=True)
class DispatcherCommand:
    """CLI input for the pending-session sweep."""

    db_path: Path | None
    once: bool
    max_cycles: int | None = None


@dataclass(slots=True)
class WatchdogCommand:
    """CLI input for the watchdog sweep."""

    db_path: Path | None
    once: bool
    max_cycles: int | None = None


@dataclass(slots=True)
class ListSessionsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectSessionCommand:
    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class TailSessionCommand:
    """CLI input for following a session until it is terminal."""

    db_path: Path | None
    session_id: str
    timeout_seconds: float | None = None


@dataclass(slots=True)
class DeadLettersCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class RedriveCommand:
    db_path: Path | None
    message_id: str


@dataclass(slots=True)
class OrchestrationRuntime:
    """Components sharing one database handle and change feed."""

    settings: Settings
    database: OrchestrationDatabase
    feed: ChangeFeed
    store: SessionStore
    event_log: EventLog
    queue: SqliteTaskQueue


class OrchestrationCliController:
    """Coordinates dispatch, worker, watchdog and inspection CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        messages: list[ChatMessage] = []
        if command.system_prompt:
            messages.append(ChatMessage(role="system", content=command.system_prompt))
        messages.append(ChatMessage(role="user", content=command.prompt))
        metadata = _parse_metadata(command.metadata)
        if command.panel:
            metadata["panel"] = list(command.panel)

        with _runtime(settings) as runtime:
            dispatcher = Dispatcher(store=runtime.store, queue=runtime.queue)
            session = dispatcher.dispatch(messages, metadata or None)
        return [
            f"Session: {session.session_id}",
            f"Status: {session.status.value}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        step_function = load_step_function(command.step_function or settings.worker.step_function)
        worker_id = command.worker_id or settings.worker.worker_id or _default_worker_id()
        with _runtime(settings) as runtime:
            worker = SessionWorker(
                store=runtime.store,
                event_log=runtime.event_log,
                queue=runtime.queue,
                step_function=step_function,
                worker_id=worker_id,
                visibility_timeout_seconds=settings.queue.visibility_timeout_seconds,
                step_retry_limit=settings.worker.step_retry_limit,
                retry_base_seconds=settings.worker.retry_base_seconds,
                retry_max_seconds=settings.worker.retry_max_seconds,
                max_steps=settings.worker.max_steps,
                max_context_messages=settings.worker.max_context_messages,
                keep_recent_messages=settings.worker.keep_recent_messages,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_messages=command.max_messages,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            f"Worker {worker_id} summary: "
            f"received={summary.received} completed={summary.completed} "
            f"failed={summary.failed} dropped={summary.dropped} stale={summary.stale} "
            f"retries={summary.retries} idle_polls={summary.idle_polls}",
        ]

    def run_dispatcher(self, command: DispatcherCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            dispatcher = Dispatcher(
                store=runtime.store,
                queue=runtime.queue,
                republish_after_seconds=settings.dispatcher.republish_after_seconds,
                republish_batch_size=settings.dispatcher.republish_batch_size,
                poll_interval_seconds=settings.dispatcher.poll_interval_seconds,
            )
            summary = dispatcher.run_loop(max_cycles=1 if command.once else command.max_cycles)
        return [
            f"Dispatcher summary: cycles={summary.cycles} republished={summary.republished}",
        ]

    def run_watchdog(self, command: WatchdogCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            watchdog = Watchdog(
                store=runtime.store,
                queue=runtime.queue,
                max_session_age_seconds=settings.watchdog.max_session_age_seconds,
                lease_seconds=settings.queue.visibility_timeout_seconds,
                dead_letter_policy=DeadLetterPolicy(settings.watchdog.dead_letter_policy),
                dead_letter_max_redrives=settings.watchdog.dead_letter_max_redrives,
                batch_size=settings.watchdog.batch_size,
                interval_seconds=settings.watchdog.interval_seconds,
            )
            summary = (
                watchdog.run_once()
                if command.once
                else watchdog.run_loop(max_cycles=command.max_cycles)
            )

        lines = [
            "Watchdog summary: "
            f"force_failed={len(summary.force_failed)} stuck={len(summary.stuck)} "
            f"dead_letters={len(summary.dead_letters)} redriven={len(summary.redriven)}",
        ]
        lines.extend(f"  force_failed {session_id}" for session_id in summary.force_failed)
        lines.extend(f"  stuck {session_id}" for session_id in summary.stuck)
        lines.extend(f"  dead_letter {message_id}" for message_id in summary.dead_letters)
        return lines

    def list_sessions(self, command: ListSessionsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = SessionStatus(command.status) if command.status is not None else None
        with _runtime(settings) as runtime:
            sessions = runtime.store.list_sessions(status=status, limit=command.limit)
        if not sessions:
            return ["No sessions found."]
        return [
            f"{session.session_id} status={session.status.value} "
            f"executions={session.execution_count} "
            f"created_at={session.created_at.isoformat()} "
            f"worker={session.claimed_by or '-'}"
            for session in sessions
        ]

    def inspect_session(self, command: InspectSessionCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            notifier = _notifier(runtime)
            trace = notifier.poll(command.session_id)

        lines = _session_lines(trace.session)
        lines.append(f"Events: {len(trace.events)}")
        lines.extend(_event_line(event) for event in trace.events)
        return lines

    def tail_session(self, command: TailSessionCommand) -> Iterator[str]:
        """Stream session snapshots and events until terminal or timeout."""

        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            notifier = _notifier(runtime)
            for item in notifier.subscribe(
                command.session_id,
                timeout_seconds=command.timeout_seconds,
            ):
                if isinstance(item, EventView):
                    yield _event_line(item)
                else:
                    yield (
                        f"[session] status={item.status.value} "
                        f"executions={item.execution_count}"
                    )

    def dead_letters(self, command: DeadLettersCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            messages = runtime.queue.list_dead_letters(limit=command.limit)
        if not messages:
            return ["No dead-lettered messages."]
        return [
            f"{message.message_id} session={message.session_id} "
            f"receives={message.receive_count} redrives={message.redrive_count} "
            f"alerted={'yes' if message.alerted_at else 'no'} "
            f"reason={message.dead_letter_reason or '-'}"
            for message in messages
        ]

    def redrive(self, command: RedriveCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            redriven = runtime.queue.redrive(command.message_id)
        if not redriven:
            raise ValueError(f"Message {command.message_id} is not dead-lettered.")
        return [f"Message {command.message_id} returned to the queue."]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_metadata(values: tuple[str, ...]) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    for value in values:
        key, separator, raw = value.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Metadata must look like KEY=VALUE, got {value!r}")
        metadata[key.strip()] = raw
    return metadata


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _notifier(runtime: OrchestrationRuntime) -> StatusNotifier:
    return StatusNotifier(
        store=runtime.store,
        event_log=runtime.event_log,
        feed=runtime.feed,
        poll_interval_seconds=runtime.settings.notifier.poll_interval_seconds,
    )


def _session_lines(session: SessionView) -> list[str]:
    return [
        f"Session: {session.session_id}",
        f"Status: {session.status.value}",
        f"Executions: {session.execution_count}",
        f"Worker: {session.claimed_by or '-'}",
        f"Created: {session.created_at.isoformat()}",
        f"Finished: {session.finished_at.isoformat() if session.finished_at else '-'}",
        f"Messages: {len(session.messages)}",
        f"Final response: {session.final_response if session.final_response is not None else '-'}",
        f"Error: {session.error or '-'}",
    ]


def _event_line(event: EventView) -> str:
    payload = json.dumps(event.event_data, ensure_ascii=False, sort_keys=True)
    return f"  {event.created_at.isoformat()} #{event.event_id} {event.event_type.value} {payload}"


@contextmanager
def _runtime(settings: Settings) -> Iterator[OrchestrationRuntime]:
    database = OrchestrationDatabase(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    database.init_schema()
    feed = ChangeFeed()
    try:
        yield OrchestrationRuntime(
            settings=settings,
            database=database,
            feed=feed,
            store=SessionStore(database, feed=feed),
            event_log=EventLog(database, feed=feed),
            queue=SqliteTaskQueue(
                database,
                queue_name=settings.queue.queue_name,
                visibility_timeout_seconds=settings.queue.visibility_timeout_seconds,
                max_receive_count=settings.queue.max_receive_count,
            ),
        )
    finally:
        database.close()
