"""Chat-completions-compatible provider (``POST /chat/completions``)."""

import json
from typing import Any, AsyncIterator

from codeloop.exceptions import LLMAPIError
from codeloop.llm import InvocationRequest, StreamChunk, ToolCall
from codeloop.llm.http import HTTPProvider

_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class ChatCompletionsProvider(HTTPProvider):
    """Provider for OpenAI-compatible chat completions endpoints."""

    endpoint = "/chat/completions"

    def _convert_messages(self, request: InvocationRequest) -> list[dict[str, Any]]:
        """Convert messages to chat-completions format."""
        result: list[dict[str, Any]] = []
        if request.system:
            result.append({"role": "system", "content": request.system})

        for msg in request.messages:
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content or "",
                })
            elif msg.role == "assistant" and msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                result.append({"role": msg.role, "content": msg.content or ""})
        return result

    def _build_body(self, request: InvocationRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(request),
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": request.temperature if request.temperature is not None else self.temperature,
            "max_tokens": request.max_tokens or self.max_tokens,
        }
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
            if request.tool_choice:
                body["tool_choice"] = request.tool_choice
        body.update(request.provider_options or {})
        return body

    async def _parse_events(self, events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        pending: dict[int, dict[str, str]] = {}
        finish_reason = "stop"
        usage: dict[str, int] | None = None

        async for event in events:
            if event.get("error"):
                error = event["error"] if isinstance(event["error"], dict) else {"message": str(event["error"])}
                status = error.get("code") if isinstance(error.get("code"), int) else None
                raise LLMAPIError(
                    f"{self.provider} stream error: {error.get('message', 'unknown error')}",
                    status_code=status,
                    code=None if status else error.get("code"),
                    body=event,
                )
            if event.get("usage"):
                raw_usage = event["usage"]
                usage = {
                    "input_tokens": int(raw_usage.get("prompt_tokens", 0) or 0),
                    "output_tokens": int(raw_usage.get("completion_tokens", 0) or 0),
                }
            for choice in event.get("choices") or []:
                delta = choice.get("delta") or {}
                if delta.get("reasoning_content"):
                    yield StreamChunk(type="reasoning-delta", text=delta["reasoning_content"])
                if delta.get("content"):
                    yield StreamChunk(type="text-delta", text=delta["content"])
                for tc in delta.get("tool_calls") or []:
                    slot = pending.setdefault(int(tc.get("index", 0)), {"id": "", "name": "", "arguments": ""})
                    if tc.get("id"):
                        slot["id"] = tc["id"]
                    function = tc.get("function") or {}
                    if function.get("name"):
                        slot["name"] += function["name"]
                    if function.get("arguments"):
                        slot["arguments"] += function["arguments"]
                if choice.get("finish_reason"):
                    finish_reason = _FINISH_REASONS.get(choice["finish_reason"], choice["finish_reason"])

        for index in sorted(pending):
            slot = pending[index]
            yield StreamChunk(
                type="tool-call",
                tool_call=ToolCall(
                    id=slot["id"] or f"call_{index}",
                    name=slot["name"],
                    arguments=_parse_arguments(slot["arguments"]),
                ),
            )
        if pending:
            finish_reason = "tool-calls"
        yield StreamChunk(type="finish", usage=usage, finish_reason=finish_reason)

