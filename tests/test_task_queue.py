from __future__ import annotations

import logging
from datetime import timedelta

import allure
import pytest
from conftest import VISIBILITY_TIMEOUT_SECONDS, Runtime

from session_orchestrator.orchestrator.models import QueueMessageStatus

pytestmark = [
    allure.epic("Orchestration Runtime"),
    allure.feature("Task Queue Delivery"),
]


def test_received_message_is_invisible_until_window_expires(runtime: Runtime) -> None:
    message_id = runtime.queue.publish("session-1")

    delivery = runtime.queue.receive()
    assert delivery is not None
    assert delivery.message_id == message_id
    assert delivery.session_id == "session-1"
    assert delivery.receive_count == 1
    assert delivery.received_at == runtime.clock.now
    window = timedelta(seconds=VISIBILITY_TIMEOUT_SECONDS)
    assert delivery.visible_until == runtime.clock.now + window
    stored = runtime.queue.get_message(message_id)
    assert stored is not None
    assert stored.receive_count == 1
    assert runtime.queue.receive() is None

    runtime.clock.advance(VISIBILITY_TIMEOUT_SECONDS - 1)
    assert runtime.queue.receive() is None

    runtime.clock.advance(1)
    redelivery = runtime.queue.receive()
    assert redelivery is not None
    assert redelivery.message_id == message_id
    assert redelivery.receive_count == 2
    assert redelivery.receipt_handle != delivery.receipt_handle


def test_acknowledge_removes_message_and_rejects_stale_handle(runtime: Runtime) -> None:
    message_id = runtime.queue.publish("session-1")
    first = runtime.queue.receive()
    assert first is not None

    runtime.clock.advance(VISIBILITY_TIMEOUT_SECONDS)
    second = runtime.queue.receive()
    assert second is not None

    assert runtime.queue.acknowledge(first.receipt_handle) is False
    assert runtime.queue.acknowledge(second.receipt_handle) is True
    assert runtime.queue.acknowledge(second.receipt_handle) is False
    assert runtime.queue.get_message(message_id) is None
    assert runtime.queue.depth() == 0


def test_custom_visibility_timeout_on_receive(runtime: Runtime) -> None:
    runtime.queue.publish("session-1")
    assert runtime.queue.receive(visibility_timeout_seconds=10) is not None

    runtime.clock.advance(10)

    assert runtime.queue.receive() is not None


def test_extend_pushes_visibility_deadline(runtime: Runtime) -> None:
    message_id = runtime.queue.publish("session-1")
    delivery = runtime.queue.receive()
    assert delivery is not None

    runtime.clock.advance(600)
    assert runtime.queue.extend(delivery.receipt_handle, VISIBILITY_TIMEOUT_SECONDS) is True

    runtime.clock.advance(600)
    assert runtime.queue.receive() is None
    message = runtime.queue.get_message(message_id)
    assert message is not None
    assert message.visible_after == runtime.clock.now + timedelta(seconds=300)
    assert runtime.queue.extend("unknown-handle", 60) is False


def test_message_is_dead_lettered_after_max_receive_count(
    runtime: Runtime,
    caplog: pytest.LogCaptureFixture,
) -> None:
    message_id = runtime.queue.publish("session-1")
    for expected in (1, 2, 3):
        delivery = runtime.queue.receive()
        assert delivery is not None
        assert delivery.receive_count == expected
        runtime.clock.advance(VISIBILITY_TIMEOUT_SECONDS)

    with caplog.at_level(logging.ERROR):
        assert runtime.queue.receive() is None

    message = runtime.queue.get_message(message_id)
    assert message is not None
    assert message.status == QueueMessageStatus.DEAD_LETTERED
    assert message.receive_count == 3
    assert message.dead_lettered_at == runtime.clock.now
    assert message.receipt_handle is None
    assert "max_receive_count 3" in (message.dead_letter_reason or "")
    assert runtime.queue.depth() == 0
    assert "dead-lettered after 3 receives" in caplog.text
    assert [m.message_id for m in runtime.queue.list_dead_letters()] == [message_id]


def test_dead_letter_alert_is_recorded_once(runtime: Runtime) -> None:
    message_id = _dead_letter(runtime)

    assert runtime.queue.mark_dead_letter_alerted(message_id) is True
    assert runtime.queue.mark_dead_letter_alerted(message_id) is False
    assert runtime.queue.list_dead_letters(include_alerted=False) == []
    assert len(runtime.queue.list_dead_letters()) == 1


def test_redrive_returns_dead_letter_with_fresh_receive_budget(runtime: Runtime) -> None:
    message_id = _dead_letter(runtime)

    assert runtime.queue.redrive(message_id) is True
    assert runtime.queue.redrive(message_id) is False

    message = runtime.queue.get_message(message_id)
    assert message is not None
    assert message.status == QueueMessageStatus.AVAILABLE
    assert message.receive_count == 0
    assert message.redrive_count == 1
    assert message.alerted_at is None
    delivery = runtime.queue.receive()
    assert delivery is not None
    assert delivery.receive_count == 1


def test_depth_counts_visible_and_in_flight_messages(runtime: Runtime) -> None:
    runtime.queue.publish("session-1")
    runtime.queue.publish("session-2")
    assert runtime.queue.receive() is not None

    assert runtime.queue.depth() == 2


def _dead_letter(runtime: Runtime) -> str:
    message_id = runtime.queue.publish("session-1")
    for _ in range(3):
        assert runtime.queue.receive() is not None
        runtime.clock.advance(VISIBILITY_TIMEOUT_SECONDS)
    assert runtime.queue.receive() is None
    return message_id
