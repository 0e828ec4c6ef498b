"""Durable session store with compare-and-set lifecycle transitions."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from session_orchestrator.orchestrator.errors import ClaimConflict, SessionNotFound, StaleFinalize
from session_orchestrator.orchestrator.event_log import insert_event
from session_orchestrator.orchestrator.events import validate_event_data
from session_orchestrator.orchestrator.models import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    ChatMessage,
    EventType,
    SessionStatus,
    SessionView,
)
from session_orchestrator.orchestrator.notifier import ChangeFeed
from session_orchestrator.storage.common import (
    dump_json,
    load_json_list,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from session_orchestrator.storage.database import OrchestrationDatabase
from session_orchestrator.storage.tables import OrchestrationSession

logger = logging.getLogger(__name__)

_NON_TERMINAL_VALUES = tuple(
    status.value for status in SessionStatus if status not in TERMINAL_STATUSES
)


class SessionStore:
    """Authoritative session state; every transition is a single CAS UPDATE."""

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

    def create(
        self,
        messages: Sequence[ChatMessage],
        metadata: dict[str, Any] | None = None,
    ) -> SessionView:
        """Persist a new pending session."""

        now = to_db_datetime(self.clock())
        row = OrchestrationSession(
            session_id=str(uuid.uuid4()),
            status=SessionStatus.PENDING.value,
            execution_count=0,
            messages_json=dump_json([message.to_dict() for message in messages]),
            metadata_json=dump_json(metadata) if metadata else None,
            created_at=now,
            updated_at=now,
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_session_view(row)
        self._publish(view.session_id)
        return view

    def get(self, session_id: str) -> SessionView:
        with Session(self.database.engine) as session:
            row = session.exec(
                select(OrchestrationSession).where(
                    OrchestrationSession.session_id == session_id,
                ),
            ).one_or_none()
            if row is None:
                raise SessionNotFound(session_id)
            return _to_session_view(row)

    def claim(
        self,
        session_id: str,
        *,
        worker_id: str,
        lease_seconds: float,
        heartbeat_at: datetime | None = None,
    ) -> SessionView:
        """Take exclusive ownership of a session for one execution.

        Pending and queued sessions are claimable outright. A running session is
        claimable only once its holder's heartbeat is older than ``lease_seconds``.
        The returned ``execution_count`` is the claim token.

        ``heartbeat_at`` backdates the first heartbeat to when the delivery
        started, so the lease never outlives the visibility window of the
        message that carried the claim.
        """

        now = self.clock()
        lease_start = heartbeat_at if heartbeat_at is not None else now
        with Session(self.database.engine) as session:
            current = session.exec(
                select(OrchestrationSession).where(
                    OrchestrationSession.session_id == session_id,
                ),
            ).one_or_none()
            if current is None:
                raise SessionNotFound(session_id)

            status = SessionStatus(current.status)
            if status in TERMINAL_STATUSES:
                raise ClaimConflict(session_id, f"session already {status.value}")
            if status == SessionStatus.RUNNING:
                heartbeat = optional_utc(current.heartbeat_at)
                if heartbeat is not None and now - heartbeat < timedelta(seconds=lease_seconds):
                    raise ClaimConflict(
                        session_id,
                        f"claim {current.execution_count} held by {current.claimed_by}",
                    )
            elif status not in CLAIMABLE_STATUSES:
                raise ClaimConflict(session_id, f"unexpected status {status.value}")

            previous_count = current.execution_count
            previous_holder = current.claimed_by

            result = session.exec(
                sa_update(OrchestrationSession)
                .where(
                    col(OrchestrationSession.session_id) == session_id,
                    col(OrchestrationSession.status) == current.status,
                    col(OrchestrationSession.execution_count) == previous_count,
                )
                .values(
                    status=SessionStatus.RUNNING.value,
                    execution_count=previous_count + 1,
                    claimed_by=worker_id,
                    started_at=current.started_at or to_db_datetime(now),
                    heartbeat_at=to_db_datetime(lease_start),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimConflict(session_id, "lost claim race")
            session.commit()

            if status == SessionStatus.RUNNING:
                logger.warning(
                    "Worker %s took over session %s from stale claim %s held by %s",
                    worker_id,
                    session_id,
                    previous_count,
                    previous_holder,
                )
            claimed = session.exec(
                select(OrchestrationSession).where(
                    OrchestrationSession.session_id == session_id,
                ),
            ).one()
            view = _to_session_view(claimed)
        self._publish(session_id)
        return view

    def heartbeat(self, session_id: str, *, execution_count: int) -> None:
        """Renew the liveness signal of the current claim holder."""

        now = to_db_datetime(self.clock())
        self._guarded_update(
            session_id,
            execution_count=execution_count,
            values={"heartbeat_at": now},
        )

    def update_messages(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        *,
        execution_count: int,
    ) -> None:
        """Persist accumulated context for the current claim holder.

        Leaves ``heartbeat_at`` alone: only visibility renewal extends the lease.
        """

        now = to_db_datetime(self.clock())
        self._guarded_update(
            session_id,
            execution_count=execution_count,
            values={
                "messages_json": dump_json([message.to_dict() for message in messages]),
                "updated_at": now,
            },
        )
        self._publish(session_id)

    def finalize(
        self,
        session_id: str,
        final_response: str,
        *,
        execution_count: int | None = None,
    ) -> SessionView:
        """Mark a running session completed with its final response."""

        now = to_db_datetime(self.clock())
        return self._resolve(
            session_id,
            execution_count=execution_count,
            values={
                "status": SessionStatus.COMPLETED.value,
                "final_response": final_response,
                "error": None,
                "finished_at": now,
                "heartbeat_at": now,
                "updated_at": now,
            },
        )

    def fail(
        self,
        session_id: str,
        error: str,
        *,
        execution_count: int | None = None,
    ) -> SessionView:
        """Mark a running session failed."""

        now = to_db_datetime(self.clock())
        return self._resolve(
            session_id,
            execution_count=execution_count,
            values={
                "status": SessionStatus.FAILED.value,
                "final_response": None,
                "error": error,
                "finished_at": now,
                "heartbeat_at": now,
                "updated_at": now,
            },
        )

    def force_fail(self, session_id: str, error: str, *, max_age_seconds: float) -> bool:
        """Fail an overdue, unresolved session regardless of who holds it.

        The terminal ``error`` event is written in the same transaction, so the
        session is never observed failed without it.
        """

        now = self.clock()
        cutoff = to_db_datetime(now - timedelta(seconds=max_age_seconds))
        payload = validate_event_data(
            EventType.ERROR,
            {"error": error, "error_type": "WatchdogTimeout", "terminal": True},
        )
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(OrchestrationSession)
                .where(
                    col(OrchestrationSession.session_id) == session_id,
                    col(OrchestrationSession.status).in_(_NON_TERMINAL_VALUES),
                    col(OrchestrationSession.created_at) <= cutoff,
                )
                .values(
                    status=SessionStatus.FAILED.value,
                    final_response=None,
                    error=error,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            insert_event(
                session=session,
                session_id=session_id,
                event_type=EventType.ERROR,
                payload=payload,
                now=now,
            )
            session.commit()
        self._publish(session_id)
        return True

    def mark_queued(self, session_id: str) -> bool:
        """Move a pending session to queued; False if it already moved on."""

        now = to_db_datetime(self.clock())
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(OrchestrationSession)
                .where(
                    col(OrchestrationSession.session_id) == session_id,
                    col(OrchestrationSession.status) == SessionStatus.PENDING.value,
                )
                .values(status=SessionStatus.QUEUED.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        self._publish(session_id)
        return True

    def list_sessions(
        self,
        *,
        status: SessionStatus | None = None,
        limit: int = 50,
    ) -> list[SessionView]:
        """List recent sessions, optionally filtered by status."""

        with Session(self.database.engine) as session:
            statement = select(OrchestrationSession)
            if status is not None:
                statement = statement.where(OrchestrationSession.status == status.value)
            rows = session.exec(
                statement.order_by(col(OrchestrationSession.created_at).desc()).limit(limit),
            ).all()
        return [_to_session_view(row) for row in rows]

    def list_overdue_sessions(
        self,
        *,
        max_age_seconds: float,
        limit: int = 100,
    ) -> list[SessionView]:
        """Non-terminal sessions created more than ``max_age_seconds`` ago."""

        cutoff = to_db_datetime(self.clock() - timedelta(seconds=max_age_seconds))
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(OrchestrationSession)
                .where(
                    col(OrchestrationSession.status).in_(_NON_TERMINAL_VALUES),
                    col(OrchestrationSession.created_at) <= cutoff,
                )
                .order_by(col(OrchestrationSession.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_session_view(row) for row in rows]

    def list_stuck_sessions(
        self,
        *,
        lease_seconds: float,
        limit: int = 100,
    ) -> list[SessionView]:
        """Running sessions whose holder stopped heartbeating."""

        cutoff = to_db_datetime(self.clock() - timedelta(seconds=lease_seconds))
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(OrchestrationSession)
                .where(
                    OrchestrationSession.status == SessionStatus.RUNNING.value,
                    col(OrchestrationSession.heartbeat_at) < cutoff,
                )
                .order_by(col(OrchestrationSession.heartbeat_at).asc())
                .limit(limit),
            ).all()
        return [_to_session_view(row) for row in rows]

    def list_pending_sessions(
        self,
        *,
        older_than_seconds: float,
        limit: int = 100,
    ) -> list[SessionView]:
        """Sessions left pending, e.g. when the dispatcher died before publishing."""

        cutoff = to_db_datetime(self.clock() - timedelta(seconds=older_than_seconds))
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(OrchestrationSession)
                .where(
                    OrchestrationSession.status == SessionStatus.PENDING.value,
                    col(OrchestrationSession.created_at) <= cutoff,
                )
                .order_by(col(OrchestrationSession.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_session_view(row) for row in rows]

    def _guarded_update(
        self,
        session_id: str,
        *,
        execution_count: int,
        values: dict[str, Any],
    ) -> None:
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(OrchestrationSession)
                .where(
                    col(OrchestrationSession.session_id) == session_id,
                    col(OrchestrationSession.status) == SessionStatus.RUNNING.value,
                    col(OrchestrationSession.execution_count) == execution_count,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise _stale_claim(session, session_id, execution_count)
            session.commit()

    def _resolve(
        self,
        session_id: str,
        *,
        execution_count: int | None,
        values: dict[str, Any],
    ) -> SessionView:
        with Session(self.database.engine) as session:
            statement = sa_update(OrchestrationSession).where(
                col(OrchestrationSession.session_id) == session_id,
                col(OrchestrationSession.status) == SessionStatus.RUNNING.value,
            )
            if execution_count is not None:
                statement = statement.where(
                    col(OrchestrationSession.execution_count) == execution_count,
                )
            result = session.exec(statement.values(**values))
            if result.rowcount != 1:
                session.rollback()
                raise _stale_claim(session, session_id, execution_count)
            session.commit()
            resolved = session.exec(
                select(OrchestrationSession).where(
                    OrchestrationSession.session_id == session_id,
                ),
            ).one()
            view = _to_session_view(resolved)
        self._publish(session_id)
        return view

    def _publish(self, session_id: str) -> None:
        if self.feed is not None:
            self.feed.publish(session_id)


def _stale_claim(
    session: Session,
    session_id: str,
    execution_count: int | None,
) -> SessionNotFound | StaleFinalize:
    current = session.exec(
        select(OrchestrationSession).where(OrchestrationSession.session_id == session_id),
    ).one_or_none()
    if current is None:
        return SessionNotFound(session_id)
    claim = f"claim {execution_count}" if execution_count is not None else "caller"
    return StaleFinalize(
        session_id,
        f"{claim} cannot act on session "
        f"(status={current.status}, execution_count={current.execution_count})",
    )


def _to_session_view(row: OrchestrationSession) -> SessionView:
    return SessionView(
        session_id=row.session_id,
        status=SessionStatus(row.status),
        execution_count=row.execution_count,
        messages=[
            ChatMessage.from_dict(item)
            for item in load_json_list(row.messages_json)
            if isinstance(item, dict)
        ],
        metadata=load_json_object(row.metadata_json),
        final_response=row.final_response,
        error=row.error,
        claimed_by=row.claimed_by,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
    )
