"""Append-only event log for orchestration traces."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from session_orchestrator.orchestrator.errors import SessionNotFound, StaleFinalize
from session_orchestrator.orchestrator.events import parse_event_type, validate_event_data
from session_orchestrator.orchestrator.models import EventType, EventView, SessionStatus
from session_orchestrator.orchestrator.notifier import ChangeFeed
from session_orchestrator.storage.common import (
    dump_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from session_orchestrator.storage.database import OrchestrationDatabase
from session_orchestrator.storage.tables import OrchestrationEvent, OrchestrationSession


class EventLog:
    """Typed, append-only event stream per session."""

    def __init__(
        self,
        database: OrchestrationDatabase,
        *,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.feed = feed
        self.clock = clock

    def append(
        self,
        session_id: str,
        event_type: EventType | str,
        data: dict[str, Any],
        *,
        execution_count: int | None = None,
    ) -> EventView:
        """Validate and append one event.

        With ``execution_count`` the append is claim-guarded: it commits only
        while that claim still holds the running session, and raises
        ``StaleFinalize`` otherwise.
        """

        resolved = parse_event_type(event_type)
        payload = validate_event_data(resolved, data)
        now = self.clock()
        with Session(self.database.engine) as session:
            if execution_count is None:
                exists = session.exec(
                    select(OrchestrationSession.session_id).where(
                        OrchestrationSession.session_id == session_id,
                    ),
                ).one_or_none()
                if exists is None:
                    raise SessionNotFound(session_id)
            else:
                guard_claim(
                    session=session,
                    session_id=session_id,
                    execution_count=execution_count,
                )
            row = insert_event(
                session=session,
                session_id=session_id,
                event_type=resolved,
                payload=payload,
                now=now,
            )
            session.commit()
            session.refresh(row)
            view = _to_event_view(row)

        if self.feed is not None:
            self.feed.publish(session_id)
        return view

    def list(self, session_id: str, *, after_event_id: int | None = None) -> list[EventView]:
        """Return the session's events ordered by created_at, insertion id."""

        with Session(self.database.engine) as session:
            exists = session.exec(
                select(OrchestrationSession.session_id).where(
                    OrchestrationSession.session_id == session_id,
                ),
            ).one_or_none()
            if exists is None:
                raise SessionNotFound(session_id)

            statement = select(OrchestrationEvent).where(
                OrchestrationEvent.session_id == session_id,
            )
            if after_event_id is not None:
                statement = statement.where(col(OrchestrationEvent.id) > after_event_id)
            rows = session.exec(
                statement.order_by(
                    col(OrchestrationEvent.created_at).asc(),
                    col(OrchestrationEvent.id).asc(),
                ),
            ).all()
        return [_to_event_view(row) for row in rows]


def guard_claim(
    *,
    session: Session,
    session_id: str,
    execution_count: int,
) -> None:
    """Verify the claim inside the caller's transaction.

    The no-op UPDATE takes the SQLite write lock, so whatever the caller writes
    next in the same transaction cannot interleave with a competing claim. It
    leaves ``heartbeat_at`` untouched because the lease tracks queue visibility.
    """

    result = session.exec(
        sa_update(OrchestrationSession)
        .where(
            col(OrchestrationSession.session_id) == session_id,
            col(OrchestrationSession.status) == SessionStatus.RUNNING.value,
            col(OrchestrationSession.execution_count) == execution_count,
        )
        .values(execution_count=execution_count),
    )
    if result.rowcount == 1:
        return
    session.rollback()
    current = session.exec(
        select(OrchestrationSession).where(OrchestrationSession.session_id == session_id),
    ).one_or_none()
    if current is None:
        raise SessionNotFound(session_id)
    raise StaleFinalize(
        session_id,
        f"claim {execution_count} no longer held "
        f"(status={current.status}, execution_count={current.execution_count})",
    )


def insert_event(
    *,
    session: Session,
    session_id: str,
    event_type: EventType,
    payload: dict[str, Any],
    now: datetime,
) -> OrchestrationEvent:
    row = OrchestrationEvent(
        session_id=session_id,
        event_type=event_type.value,
        event_data_json=dump_json(payload),
        created_at=to_db_datetime(now),
    )
    session.add(row)
    return row


def _to_event_view(row: OrchestrationEvent) -> EventView:
    data = json.loads(row.event_data_json) if row.event_data_json else {}
    return EventView(
        event_id=row.id or 0,
        session_id=row.session_id,
        event_type=EventType(row.event_type),
        event_data=data if isinstance(data, dict) else {},
        created_at=to_utc_aware_datetime(row.created_at),
    )
