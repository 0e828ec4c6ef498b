"""Durable at-least-once task queue on SQLite.

Semantics follow a hosted message queue: a received message becomes invisible
for a visibility window and reappears unless acknowledged with the receipt
handle of that delivery. Each delivery gets a fresh handle, so a slow worker
can never acknowledge a message that was already redelivered elsewhere. A
message received ``max_receive_count`` times is moved to the dead-letter state
on its next receive instead of being delivered again.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from session_orchestrator.orchestrator.errors import QueueRedeliveryExhausted
from session_orchestrator.orchestrator.models import (
    QueueMessageStatus,
    QueueMessageView,
    ReceivedMessage,
)
from session_orchestrator.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from session_orchestrator.storage.database import OrchestrationDatabase
from session_orchestrator.storage.tables import TaskQueueMessage

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "orchestration"


class TaskQueue(Protocol):
    """Queue operations the dispatcher and worker depend on."""

    def publish(self, session_id: str) -> str: ...

    def receive(
        self,
        *,
        visibility_timeout_seconds: float | None = None,
    ) -> ReceivedMessage | None: ...

    def acknowledge(self, receipt_handle: str) -> bool: ...

    def extend(self, receipt_handle: str, duration_seconds: float) -> bool: ...


class SqliteTaskQueue:
    """SQLite-backed queue with visibility windows and a dead-letter state."""

    def __init__(  # noqa: PLR0913
        self,
        database: OrchestrationDatabase,
        *,
        queue_name: str = DEFAULT_QUEUE_NAME,
        visibility_timeout_seconds: float = 900,
        max_receive_count: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.queue_name = queue_name
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.max_receive_count = max_receive_count
        self.clock = clock

    def publish(self, session_id: str) -> str:
        """Enqueue a message carrying only the session id."""

        now = to_db_datetime(self.clock())
        message_id = str(uuid.uuid4())
        row = TaskQueueMessage(
            message_id=message_id,
            queue_name=self.queue_name,
            session_id=session_id,
            status=QueueMessageStatus.AVAILABLE.value,
            receive_count=0,
            redrive_count=0,
            visible_after=now,
            created_at=now,
            updated_at=now,
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
        logger.debug("Published message %s for session %s", message_id, session_id)
        return message_id

    def receive(
        self,
        *,
        visibility_timeout_seconds: float | None = None,
    ) -> ReceivedMessage | None:
        """Deliver one visible message and hide it for the visibility window."""

        window = (
            visibility_timeout_seconds
            if visibility_timeout_seconds is not None
            else self.visibility_timeout_seconds
        )
        while True:
            now = self.clock()
            with Session(self.database.engine) as session:
                candidate = session.exec(
                    select(TaskQueueMessage)
                    .where(
                        TaskQueueMessage.queue_name == self.queue_name,
                        TaskQueueMessage.status == QueueMessageStatus.AVAILABLE.value,
                        col(TaskQueueMessage.visible_after) <= to_db_datetime(now),
                    )
                    .order_by(
                        col(TaskQueueMessage.visible_after).asc(),
                        col(TaskQueueMessage.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                if candidate.receive_count >= self.max_receive_count:
                    if self._dead_letter(session=session, candidate=candidate, now=now):
                        exhausted = QueueRedeliveryExhausted(
                            candidate.message_id,
                            candidate.session_id,
                            candidate.receive_count,
                        )
                        logger.error("%s", exhausted)
                    continue

                # The ORM-enabled UPDATE below also refreshes ``candidate``.
                message_id = candidate.message_id
                session_id = candidate.session_id
                next_count = candidate.receive_count + 1
                receipt_handle = uuid.uuid4().hex
                visible_until = now + timedelta(seconds=window)
                result = session.exec(
                    sa_update(TaskQueueMessage)
                    .where(
                        col(TaskQueueMessage.message_id) == message_id,
                        col(TaskQueueMessage.status) == QueueMessageStatus.AVAILABLE.value,
                        col(TaskQueueMessage.receive_count) == next_count - 1,
                    )
                    .values(
                        receive_count=next_count,
                        receipt_handle=receipt_handle,
                        visible_after=to_db_datetime(visible_until),
                        first_received_at=candidate.first_received_at or to_db_datetime(now),
                        last_received_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return ReceivedMessage(
                    message_id=message_id,
                    session_id=session_id,
                    receipt_handle=receipt_handle,
                    receive_count=next_count,
                    received_at=now,
                    visible_until=visible_until,
                )

    def acknowledge(self, receipt_handle: str) -> bool:
        """Delete the delivered message; False when the handle is stale."""

        with Session(self.database.engine) as session:
            result = session.exec(
                sa_delete(TaskQueueMessage).where(
                    col(TaskQueueMessage.queue_name) == self.queue_name,
                    col(TaskQueueMessage.receipt_handle) == receipt_handle,
                    col(TaskQueueMessage.status) == QueueMessageStatus.AVAILABLE.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def extend(self, receipt_handle: str, duration_seconds: float) -> bool:
        """Push the visibility deadline of a delivery to now + duration."""

        now = self.clock()
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(TaskQueueMessage)
                .where(
                    col(TaskQueueMessage.queue_name) == self.queue_name,
                    col(TaskQueueMessage.receipt_handle) == receipt_handle,
                    col(TaskQueueMessage.status) == QueueMessageStatus.AVAILABLE.value,
                )
                .values(
                    visible_after=to_db_datetime(now + timedelta(seconds=duration_seconds)),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_dead_letters(
        self,
        *,
        include_alerted: bool = True,
        limit: int = 100,
    ) -> list[QueueMessageView]:
        with Session(self.database.engine) as session:
            statement = select(TaskQueueMessage).where(
                TaskQueueMessage.queue_name == self.queue_name,
                TaskQueueMessage.status == QueueMessageStatus.DEAD_LETTERED.value,
            )
            if not include_alerted:
                statement = statement.where(col(TaskQueueMessage.alerted_at).is_(None))
            rows = session.exec(
                statement.order_by(col(TaskQueueMessage.dead_lettered_at).asc()).limit(limit),
            ).all()
        return [_to_message_view(row) for row in rows]

    def mark_dead_letter_alerted(self, message_id: str) -> bool:
        """Record that a dead letter was surfaced; False if already alerted."""

        now = to_db_datetime(self.clock())
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(TaskQueueMessage)
                .where(
                    col(TaskQueueMessage.message_id) == message_id,
                    col(TaskQueueMessage.status) == QueueMessageStatus.DEAD_LETTERED.value,
                    col(TaskQueueMessage.alerted_at).is_(None),
                )
                .values(alerted_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def redrive(self, message_id: str) -> bool:
        """Return a dead letter to the queue with a fresh receive budget."""

        now = to_db_datetime(self.clock())
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(TaskQueueMessage)
                .where(
                    col(TaskQueueMessage.message_id) == message_id,
                    col(TaskQueueMessage.status) == QueueMessageStatus.DEAD_LETTERED.value,
                )
                .values(
                    status=QueueMessageStatus.AVAILABLE.value,
                    receive_count=0,
                    redrive_count=col(TaskQueueMessage.redrive_count) + 1,
                    receipt_handle=None,
                    visible_after=now,
                    dead_lettered_at=None,
                    dead_letter_reason=None,
                    alerted_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info("Redrove dead-lettered message %s", message_id)
        return True

    def get_message(self, message_id: str) -> QueueMessageView | None:
        with Session(self.database.engine) as session:
            row = session.exec(
                select(TaskQueueMessage).where(TaskQueueMessage.message_id == message_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_message_view(row)

    def depth(self) -> int:
        """Messages not yet acknowledged or dead-lettered, in flight included."""

        with Session(self.database.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(TaskQueueMessage)
                .where(
                    TaskQueueMessage.queue_name == self.queue_name,
                    TaskQueueMessage.status == QueueMessageStatus.AVAILABLE.value,
                ),
            ).one()
        return int(count)

    def _dead_letter(
        self,
        *,
        session: Session,
        candidate: TaskQueueMessage,
        now: datetime,
    ) -> bool:
        result = session.exec(
            sa_update(TaskQueueMessage)
            .where(
                col(TaskQueueMessage.message_id) == candidate.message_id,
                col(TaskQueueMessage.status) == QueueMessageStatus.AVAILABLE.value,
                col(TaskQueueMessage.receive_count) == candidate.receive_count,
            )
            .values(
                status=QueueMessageStatus.DEAD_LETTERED.value,
                receipt_handle=None,
                dead_lettered_at=to_db_datetime(now),
                dead_letter_reason=(
                    f"receive count {candidate.receive_count} reached "
                    f"max_receive_count {self.max_receive_count}"
                ),
                updated_at=to_db_datetime(now),
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        session.commit()
        return True


def _to_message_view(row: TaskQueueMessage) -> QueueMessageView:
    return QueueMessageView(
        message_id=row.message_id,
        queue_name=row.queue_name,
        session_id=row.session_id,
        status=QueueMessageStatus(row.status),
        receive_count=row.receive_count,
        redrive_count=row.redrive_count,
        visible_after=to_utc_aware_datetime(row.visible_after),
        receipt_handle=row.receipt_handle,
        first_received_at=optional_utc(row.first_received_at),
        last_received_at=optional_utc(row.last_received_at),
        dead_lettered_at=optional_utc(row.dead_lettered_at),
        dead_letter_reason=row.dead_letter_reason,
        alerted_at=optional_utc(row.alerted_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
