"""Bound the context handed to the stepping function."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from session_orchestrator.orchestrator.models import ChatMessage

SUMMARY_PREFIX = "Previous conversation summary:"


@dataclass(slots=True)
class CompactionResult:
    messages: list[ChatMessage]
    original_message_count: int
    kept_system: bool
    kept_first_user: bool
    recent_count: int
    summary_added: bool

    def event_data(self) -> dict[str, Any]:
        """Payload for the ``context_compression`` event."""

        return {
            "original_message_count": self.original_message_count,
            "compressed_message_count": len(self.messages),
            "summary_added": self.summary_added,
            "messages_kept": {
                "system": self.kept_system,
                "first_user": self.kept_first_user,
                "recent": self.recent_count,
            },
        }


def compact_messages(
    messages: list[ChatMessage],
    *,
    max_messages: int,
    keep_recent: int,
) -> CompactionResult | None:
    """Keep the first system and first user message plus the recent tail.

    Dropped messages in between are replaced with one system summary note.
    Returns None when the context already fits.
    """

    if len(messages) <= max_messages:
        return None

    recent_start = max(0, len(messages) - keep_recent)
    recent = messages[recent_start:]
    system_index = _first_index(messages, "system")
    user_index = _first_index(messages, "user")
    kept_system = system_index is not None and system_index < recent_start
    kept_first_user = user_index is not None and user_index < recent_start

    head_indexes = sorted(
        index
        for index, keep in ((system_index, kept_system), (user_index, kept_first_user))
        if keep and index is not None
    )
    dropped = recent_start - len(head_indexes)

    compacted = [messages[index] for index in head_indexes]
    if dropped > 0:
        compacted.append(
            ChatMessage(
                role="system",
                content=(
                    f"{SUMMARY_PREFIX} {dropped} earlier messages were condensed; "
                    "they covered prior tool usage and intermediate responses."
                ),
            ),
        )
    compacted.extend(recent)
    return CompactionResult(
        messages=compacted,
        original_message_count=len(messages),
        kept_system=kept_system,
        kept_first_user=kept_first_user,
        recent_count=len(recent),
        summary_added=dropped > 0,
    )


def _first_index(messages: list[ChatMessage], role: str) -> int | None:
    for index, message in enumerate(messages):
        if message.role == role:
            return index
    return None
