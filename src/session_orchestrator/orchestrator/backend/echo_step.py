"""Deterministic demo stepper for local runs and CLI tests."""

from __future__ import annotations

from session_orchestrator.orchestrator.models import ChatMessage, EventType
from session_orchestrator.orchestrator.stepping import StepContext, StepEvent, StepResult


def echo_step(context: StepContext) -> StepResult:
    """Echo the latest user message through a fake ``echo`` tool.

    With ``metadata["panel"]`` set to a list of agent names, the first step
    creates those agents and the second runs one discussion round.
    """

    prompt = _latest_user_content(context.messages)
    panel = context.metadata.get("panel")
    if isinstance(panel, list) and panel:
        return _panel_step(context, prompt=prompt, panel=[str(name) for name in panel])

    call_id = f"echo-{context.execution_count}-{context.step_index}"
    return StepResult(
        events=[
            StepEvent(
                EventType.TOOL_CALL,
                {"tool": "echo", "arguments": {"text": prompt}, "tool_call_id": call_id},
            ),
            StepEvent(
                EventType.TOOL_RESULT,
                {"tool": "echo", "tool_call_id": call_id, "success": True, "result": prompt},
            ),
            StepEvent(EventType.STATUS_UPDATE, {"message": "Echo complete", "progress": 1.0}),
        ],
        messages=[ChatMessage(role="assistant", content=prompt)],
        done=True,
        final_response=prompt,
    )


def _panel_step(context: StepContext, *, prompt: str, panel: list[str]) -> StepResult:
    agent_ids = [f"agent-{index + 1}" for index in range(len(panel))]
    if context.step_index == 0:
        return StepResult(
            events=[
                StepEvent(
                    EventType.AGENT_CREATED,
                    {"agent_id": agent_id, "name": name, "specification": {"topic": prompt}},
                )
                for agent_id, name in zip(agent_ids, panel, strict=True)
            ],
        )

    turns = [f"{name}: {prompt}" for name in panel]
    events = [
        StepEvent(
            EventType.DISCUSSION_TURN,
            {"agent_id": agent_id, "agent_name": name, "message": turn, "round": 1},
        )
        for agent_id, name, turn in zip(agent_ids, panel, turns, strict=True)
    ]
    events.append(StepEvent(EventType.STATUS_UPDATE, {"message": "Panel finished"}))
    final_response = "\n".join(turns)
    return StepResult(
        events=events,
        messages=[ChatMessage(role="assistant", content=final_response)],
        done=True,
        final_response=final_response,
    )


def _latest_user_content(messages: list[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user" and message.content:
            return message.content.strip()
    return ""
