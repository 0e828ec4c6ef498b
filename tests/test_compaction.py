from __future__ import annotations

import allure

from session_orchestrator.orchestrator.compaction import SUMMARY_PREFIX, compact_messages
from session_orchestrator.orchestrator.models import ChatMessage

pytestmark = [
    allure.epic("Orchestration Runtime"),
    allure.feature("Context Compaction"),
]


def _conversation(turns: int, *, system: bool = True) -> list[ChatMessage]:
    messages = [ChatMessage(role="system", content="rules")] if system else []
    messages.append(ChatMessage(role="user", content="original question"))
    for index in range(turns):
        messages.append(ChatMessage(role="assistant", content=f"answer {index}"))
        messages.append(ChatMessage(role="user", content=f"question {index}"))
    return messages


def test_context_within_limit_is_left_alone() -> None:
    assert compact_messages(_conversation(3), max_messages=8, keep_recent=3) is None


def test_compaction_keeps_head_summary_and_recent_tail() -> None:
    messages = _conversation(6)

    result = compact_messages(messages, max_messages=10, keep_recent=4)

    assert result is not None
    assert [m.content for m in result.messages[:2]] == ["rules", "original question"]
    assert result.messages[2].role == "system"
    assert (result.messages[2].content or "").startswith(f"{SUMMARY_PREFIX} 8 earlier messages")
    assert result.messages[3:] == messages[-4:]
    assert result.event_data() == {
        "original_message_count": 14,
        "compressed_message_count": 7,
        "summary_added": True,
        "messages_kept": {"system": True, "first_user": True, "recent": 4},
    }


def test_compaction_without_system_message() -> None:
    messages = _conversation(6, system=False)

    result = compact_messages(messages, max_messages=10, keep_recent=4)

    assert result is not None
    assert result.kept_system is False
    assert result.kept_first_user is True
    assert result.messages[0].content == "original question"
    assert len(result.messages) == 6


def test_first_user_message_inside_recent_tail_is_not_duplicated() -> None:
    messages = [ChatMessage(role="system", content="rules")]
    messages.extend(ChatMessage(role="tool", content=f"tool output {i}") for i in range(8))
    messages.append(ChatMessage(role="user", content="only question"))

    result = compact_messages(messages, max_messages=6, keep_recent=2)

    assert result is not None
    assert result.kept_first_user is False
    assert [m.content for m in result.messages if m.role == "user"] == ["only question"]
    assert result.event_data()["messages_kept"] == {
        "system": True,
        "first_user": False,
        "recent": 2,
    }
