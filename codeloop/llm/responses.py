"""Native Responses-protocol provider (``POST /responses``)."""

import json
from typing import Any, AsyncIterator

from codeloop.exceptions import LLMAPIError
from codeloop.llm import InvocationRequest, StreamChunk, ToolCall, ToolDefinition
from codeloop.llm.http import HTTPProvider


class ResponsesProvider(HTTPProvider):
    """Provider for endpoints implementing the streamed Responses protocol."""

    endpoint = "/responses"

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "name": tool.name,
                "description": tool.description or "",
                "parameters": tool.parameters or {},
            }
            for tool in tools
            if tool.name
        ]

    @staticmethod
    def _convert_input(request: InvocationRequest) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for msg in request.messages:
            if msg.role == "tool":
                items.append({
                    "type": "function_call_output",
                    "call_id": msg.tool_call_id or "",
                    "output": msg.content or "",
                })
                continue
            if msg.content or msg.role != "assistant":
                items.append({"role": msg.role, "content": msg.content or ""})
            for tc in msg.tool_calls:
                items.append({
                    "type": "function_call",
                    "call_id": tc.id,
                    "name": tc.name,
                    "arguments": json.dumps(tc.arguments),
                })
        return items

    def _build_body(self, request: InvocationRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "input": self._convert_input(request),
            "stream": True,
            "temperature": request.temperature if request.temperature is not None else self.temperature,
            "max_output_tokens": request.max_tokens or self.max_tokens,
        }
        if request.system:
            body["instructions"] = request.system
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
            if request.tool_choice:
                body["tool_choice"] = request.tool_choice
        body.update(request.provider_options or {})
        return body

    async def _parse_events(self, events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        saw_tool_call = False
        finish_reason = "stop"
        usage: dict[str, int] | None = None

        async for event in events:
            kind = event.get("type", "")
            if kind == "response.output_text.delta":
                yield StreamChunk(type="text-delta", text=event.get("delta", ""))
            elif kind in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
                yield StreamChunk(type="reasoning-delta", text=event.get("delta", ""))
            elif kind == "response.output_item.done":
                item = event.get("item") or {}
                if item.get("type") != "function_call":
                    continue
                raw_args = item.get("arguments") or "{}"
                try:
                    arguments = json.loads(raw_args)
                except json.JSONDecodeError:
                    arguments = {"raw": raw_args}
                saw_tool_call = True
                yield StreamChunk(
                    type="tool-call",
                    tool_call=ToolCall(
                        id=item.get("call_id") or item.get("id") or "",
                        name=item.get("name", ""),
                        arguments=arguments if isinstance(arguments, dict) else {"value": arguments},
                    ),
                )
            elif kind in ("response.completed", "response.incomplete"):
                response = event.get("response") or {}
                raw_usage = response.get("usage") or {}
                usage = {
                    "input_tokens": int(raw_usage.get("input_tokens", 0) or 0),
                    "output_tokens": int(raw_usage.get("output_tokens", 0) or 0),
                }
                if kind == "response.incomplete":
                    finish_reason = "length"
            elif kind in ("error", "response.failed"):
                error = event.get("error") or (event.get("response") or {}).get("error") or {}
                raise LLMAPIError(
                    f"{self.provider} stream error: {error.get('message', 'unknown error')}",
                    code=error.get("code"),
                    body=event,
                )

        if saw_tool_call:
            finish_reason = "tool-calls"
        yield StreamChunk(type="finish", usage=usage, finish_reason=finish_reason)
