"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from session_orchestrator.orchestrator.event_log import EventLog
from session_orchestrator.orchestrator.models import ChatMessage, SessionView
from session_orchestrator.orchestrator.notifier import ChangeFeed
from session_orchestrator.orchestrator.session_store import SessionStore
from session_orchestrator.orchestrator.stepping import StepFunction
from session_orchestrator.orchestrator.task_queue import SqliteTaskQueue
from session_orchestrator.orchestrator.worker import SessionWorker
from session_orchestrator.storage.database import OrchestrationDatabase

VISIBILITY_TIMEOUT_SECONDS = 900


class ManualClock:
    """Deterministic clock advanced explicitly by tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@dataclass(slots=True)
class Runtime:
    database: OrchestrationDatabase
    feed: ChangeFeed
    clock: ManualClock
    store: SessionStore
    event_log: EventLog
    queue: SqliteTaskQueue

    def create_session(self, prompt: str = "What is 6 * 7?", **metadata: Any) -> SessionView:
        return self.store.create([ChatMessage(role="user", content=prompt)], metadata or None)

    def submit(self, prompt: str = "What is 6 * 7?", **metadata: Any) -> tuple[SessionView, str]:
        """Create a session and publish it, returning the session and message id."""

        session = self.create_session(prompt, **metadata)
        message_id = self.queue.publish(session.session_id)
        self.store.mark_queued(session.session_id)
        return self.store.get(session.session_id), message_id


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def runtime(tmp_path: Path, clock: ManualClock) -> Iterator[Runtime]:
    database = OrchestrationDatabase(tmp_path / "orchestration.db")
    database.init_schema()
    feed = ChangeFeed()
    yield Runtime(
        database=database,
        feed=feed,
        clock=clock,
        store=SessionStore(database, feed=feed, clock=clock),
        event_log=EventLog(database, feed=feed, clock=clock),
        queue=SqliteTaskQueue(
            database,
            visibility_timeout_seconds=VISIBILITY_TIMEOUT_SECONDS,
            max_receive_count=3,
            clock=clock,
        ),
    )
    database.close()


@pytest.fixture()
def make_worker(runtime: Runtime) -> Callable[..., SessionWorker]:
    def _make(
        step_function: StepFunction,
        *,
        worker_id: str = "worker-1",
        **overrides: Any,
    ) -> SessionWorker:
        options: dict[str, Any] = {
            "visibility_timeout_seconds": VISIBILITY_TIMEOUT_SECONDS,
            "retry_base_seconds": 0.0,
            "retry_max_seconds": 0.0,
            "poll_interval_seconds": 0.0,
        }
        options.update(overrides)
        return SessionWorker(
            store=runtime.store,
            event_log=runtime.event_log,
            queue=runtime.queue,
            step_function=step_function,
            worker_id=worker_id,
            clock=runtime.clock,
            **options,
        )

    return _make
