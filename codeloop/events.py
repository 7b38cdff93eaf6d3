"""Events emitted by the agent loop.

Consumers should ignore kinds they do not know.
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from codeloop.llm import ToolCall

STEP_START = "step-start"
TEXT_DELTA = "text-delta"
REASONING_DELTA = "reasoning-delta"
TOOL_CALL = "tool-call"
TOOL_START = "tool-start"
TOOL_PROGRESS = "tool-progress"
TOOL_RESULT = "tool-result"
STATUS = "status"
STEP_FINISH = "step-finish"
FINISH = "finish"
ERROR = "error"
CANCELLED = "cancelled"


@dataclass
class AgentEvent:
    """One item of the agent's ordered event stream."""

    type: str
    step: int = 0
    text: str = ""
    tool_call: ToolCall | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False
    usage: dict[str, int] | None = None
    finish_reason: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def step_start(step: int) -> AgentEvent:
    return AgentEvent(STEP_START, step=step)


def text_delta(step: int, text: str) -> AgentEvent:
    return AgentEvent(TEXT_DELTA, step=step, text=text)


def reasoning_delta(step: int, text: str) -> AgentEvent:
    return AgentEvent(REASONING_DELTA, step=step, text=text)


def tool_call(step: int, call: ToolCall) -> AgentEvent:
    return AgentEvent(TOOL_CALL, step=step, tool_call=call, tool_call_id=call.id, tool_name=call.name)


def tool_start(step: int, call: ToolCall) -> AgentEvent:
    return AgentEvent(TOOL_START, step=step, tool_call_id=call.id, tool_name=call.name)


def tool_progress(step: int, call: ToolCall, message: str, data: dict[str, Any] | None = None) -> AgentEvent:
    return AgentEvent(
        TOOL_PROGRESS,
        step=step,
        text=message,
        tool_call_id=call.id,
        tool_name=call.name,
        data=dict(data or {}),
    )


def tool_result(step: int, call: ToolCall, text: str, is_error: bool) -> AgentEvent:
    return AgentEvent(
        TOOL_RESULT,
        step=step,
        text=text,
        tool_call_id=call.id,
        tool_name=call.name,
        is_error=is_error,
    )


def status(step: int, message: str, **data: Any) -> AgentEvent:
    return AgentEvent(STATUS, step=step, text=message, data=data)


def step_finish(step: int, usage: dict[str, int], finish_reason: str) -> AgentEvent:
    return AgentEvent(STEP_FINISH, step=step, usage=dict(usage), finish_reason=finish_reason)


def finish(
    step: int,
    text: str,
    usage: dict[str, int],
    steps: list[dict[str, int]],
    finish_reason: str,
) -> AgentEvent:
    return AgentEvent(
        FINISH,
        step=step,
        text=text,
        usage=dict(usage),
        finish_reason=finish_reason,
        data={"steps": [dict(s) for s in steps]},
    )


def error(step: int, message: str, hint: str | None = None, cause_chain: list[str] | None = None, **data: Any) -> AgentEvent:
    payload = {"hint": hint, "cause_chain": list(cause_chain or [])}
    payload.update(data)
    return AgentEvent(ERROR, step=step, text=message, is_error=True, data=payload)


def cancelled(step: int) -> AgentEvent:
    return AgentEvent(CANCELLED, step=step)
