"""LLM data types and the provider interface."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from typing import Any, AsyncIterator, Iterable


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    is_error: bool = False


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


def empty_usage() -> dict[str, int]:
    """Create an empty usage bucket."""
    return {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}


def add_usage(target: dict[str, int], usage: dict[str, int] | None) -> dict[str, int]:
    """Accumulate ``usage`` into ``target`` in place and return it."""
    for key in ("input_tokens", "output_tokens"):
        target[key] = int(target.get(key, 0)) + int((usage or {}).get(key, 0) or 0)
    target["total_tokens"] = target["input_tokens"] + target["output_tokens"]
    return target


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=empty_usage)
    finish_reason: str = "stop"
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LLMResponse":
        payload = dict(data)
        payload["tool_calls"] = [ToolCall(**tc) for tc in payload.get("tool_calls") or []]
        return cls(**payload)


@dataclass
class StreamChunk:
    """One provider-level streamed chunk.

    ``type`` is one of ``text-delta``, ``reasoning-delta``, ``tool-call``,
    ``finish`` or ``error``.
    """

    type: str
    text: str = ""
    tool_call: ToolCall | None = None
    usage: dict[str, int] | None = None
    finish_reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StreamChunk":
        payload = dict(data)
        if payload.get("tool_call"):
            payload["tool_call"] = ToolCall(**payload["tool_call"])
        return cls(**payload)


@dataclass
class InvocationRequest:
    """Everything needed for one model call.

    ``stream_id`` and ``abort_event`` are per-call plumbing and never part of
    the request's identity.
    """

    messages: list[Message]
    system: str = ""
    tools: list[ToolDefinition] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    tool_choice: str | None = None
    provider_options: dict[str, Any] = field(default_factory=dict)
    stream_id: str | None = None
    abort_event: asyncio.Event | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Serializable form; ``abort_event`` is dropped."""
        data = asdict(replace(self, abort_event=None))
        data.pop("abort_event", None)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InvocationRequest":
        payload = {k: v for k, v in data.items() if k != "abort_event"}
        payload["messages"] = [
            Message(**{**m, "tool_calls": [ToolCall(**tc) for tc in m.get("tool_calls") or []]})
            for m in payload.get("messages") or []
        ]
        payload["tools"] = [ToolDefinition(**t) for t in payload.get("tools") or []]
        return cls(**payload)


def collect_response(chunks: Iterable[StreamChunk], model: str = "") -> LLMResponse:
    """Fold a finished chunk sequence into a single response."""
    text: list[str] = []
    reasoning: list[str] = []
    tool_calls: list[ToolCall] = []
    usage = empty_usage()
    finish_reason = "stop"
    for chunk in chunks:
        if chunk.type == "text-delta":
            text.append(chunk.text)
        elif chunk.type == "reasoning-delta":
            reasoning.append(chunk.text)
        elif chunk.type == "tool-call" and chunk.tool_call is not None:
            tool_calls.append(chunk.tool_call)
        elif chunk.type == "finish":
            add_usage(usage, chunk.usage)
            finish_reason = chunk.finish_reason or finish_reason
    return LLMResponse(
        content="".join(text),
        tool_calls=tool_calls,
        model=model,
        usage=usage,
        finish_reason=finish_reason,
        reasoning="".join(reasoning),
    )


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    provider: str = ""
    model: str = ""

    @abstractmethod
    async def complete(self, request: InvocationRequest) -> LLMResponse:
        pass

    @abstractmethod
    def complete_streaming(self, request: InvocationRequest) -> AsyncIterator[StreamChunk]:
        pass

    def count_tokens(self, text: str) -> int:
        """Rough token estimate (~4 characters per token)."""
        return len(text) // 4

    async def close(self) -> None:
        """Release network resources."""
        return None


__all__ = [
    "InvocationRequest",
    "LLMProvider",
    "LLMResponse",
    "Message",
    "StreamChunk",
    "ToolCall",
    "ToolDefinition",
    "add_usage",
    "collect_response",
    "empty_usage",
]
