"""Contracts for the external collaborators driven by the worker."""

from __future__ import annotations

import importlib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from session_orchestrator.orchestrator.models import ChatMessage, EventType


@dataclass(slots=True)
class StepEvent:
    """One typed event reported by a step."""

    event_type: EventType | str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StepContext:
    """Inputs for one invocation of the stepping function."""

    session_id: str
    execution_count: int
    step_index: int
    attempt: int
    messages: list[ChatMessage]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StepResult:
    """Outcome of one step.

    ``messages`` are appended to the session context. A step that sets
    ``done`` must carry exactly one of ``final_response`` and ``error``.
    """

    events: list[StepEvent] = field(default_factory=list)
    messages: list[ChatMessage] = field(default_factory=list)
    done: bool = False
    final_response: str | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if self.final_response is not None and self.error is not None:
            raise ValueError("StepResult cannot carry both final_response and error.")
        if self.done and self.final_response is None and self.error is None:
            raise ValueError("A finished StepResult needs final_response or error.")
        if not self.done and (self.final_response is not None or self.error is not None):
            raise ValueError("final_response and error are only valid when done is set.")


StepFunction = Callable[[StepContext], StepResult]


class ConversationStore(Protocol):
    """Thread storage that supplies context and receives final responses."""

    def load_messages(self, thread_id: str) -> list[ChatMessage]:
        """Return the ordered conversation context for a thread."""

    def deliver_final_response(
        self,
        thread_id: str,
        session_id: str,
        final_response: str,
    ) -> None:
        """Publish a completed session's response back to its thread."""


def load_step_function(import_path: str) -> StepFunction:
    """Resolve ``package.module:attribute`` to a step callable."""

    module_name, separator, attribute = import_path.partition(":")
    if not separator or not module_name or not attribute:
        raise ValueError(
            f"Step function path must look like 'package.module:attribute', got {import_path!r}",
        )
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as error:
            raise ValueError(f"{module_name} has no attribute {attribute!r}") from error
    if not callable(target):
        raise ValueError(f"Step function {import_path!r} is not callable.")
    return target
