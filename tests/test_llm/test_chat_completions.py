import json

import httpx
import pytest

from codeloop.exceptions import LLMAPIError, LLMTransportError
from codeloop.llm import InvocationRequest, Message, ToolCall, ToolDefinition
from codeloop.llm.chat_completions import ChatCompletionsProvider


def _sse(*payloads) -> bytes:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _provider(handler, **kwargs) -> ChatCompletionsProvider:
    return ChatCompletionsProvider(
        provider="groq",
        model="llama-3.3-70b",
        base_url="https://example.test/v1/",
        api_key="sk-test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_streams_text_deltas_and_usage():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse(
                {"choices": [{"delta": {"content": "Hel"}}]},
                {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
                {"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 2}},
            ),
        )

    provider = _provider(handler)
    request = InvocationRequest(messages=[Message(role="user", content="hi")], system="be brief")
    chunks = [chunk async for chunk in provider.complete_streaming(request)]
    await provider.close()

    assert [c.type for c in chunks] == ["text-delta", "text-delta", "finish"]
    assert "".join(c.text for c in chunks) == "Hello"
    assert chunks[-1].usage == {"input_tokens": 7, "output_tokens": 2}
    assert chunks[-1].finish_reason == "stop"

    assert str(seen[0].url) == "https://example.test/v1/chat/completions"
    assert seen[0].headers["authorization"] == "Bearer sk-test"
    body = json.loads(seen[0].content)
    assert body["stream"] is True
    assert body["messages"][0] == {"role": "system", "content": "be brief"}
    assert body["messages"][1] == {"role": "user", "content": "hi"}


@pytest.mark.asyncio
async def test_accumulates_tool_call_fragments():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_sse(
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "id": "call_1", "function": {"name": "shell", "arguments": "{\"comm"}}
                ]}}]},
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "function": {"arguments": "and\": \"ls\"}"}}
                ]}, "finish_reason": "tool_calls"}]},
            ),
        )

    provider = _provider(handler)
    request = InvocationRequest(
        messages=[Message(role="user", content="list files")],
        tools=[ToolDefinition(name="shell", description="run", parameters={"type": "object"})],
    )
    chunks = [chunk async for chunk in provider.complete_streaming(request)]
    await provider.close()

    calls = [c.tool_call for c in chunks if c.type == "tool-call"]
    assert calls == [ToolCall(id="call_1", name="shell", arguments={"command": "ls"})]
    assert chunks[-1].finish_reason == "tool-calls"


@pytest.mark.asyncio
async def test_converts_tool_round_trip_messages():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "done"}}]}))

    provider = _provider(handler)
    request = InvocationRequest(
        messages=[
            Message(role="user", content="go"),
            Message(
                role="assistant",
                content="",
                tool_calls=[ToolCall(id="c1", name="shell", arguments={"command": "pwd"})],
            ),
            Message(role="tool", content="/work", tool_call_id="c1", tool_name="shell"),
        ],
        tools=[ToolDefinition(name="shell", description="run", parameters={})],
        tool_choice="auto",
    )
    response = await provider.complete(request)
    await provider.close()

    assert response.content == "done"
    assistant = captured["messages"][1]
    assert assistant["tool_calls"][0]["function"] == {"name": "shell", "arguments": "{\"command\": \"pwd\"}"}
    assert captured["messages"][2] == {"role": "tool", "tool_call_id": "c1", "content": "/work"}
    assert captured["tools"][0]["function"]["name"] == "shell"
    assert captured["tool_choice"] == "auto"


@pytest.mark.asyncio
async def test_non_success_status_raises_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            headers={"retry-after": "3"},
            json={"error": {"code": "rate_limit_exceeded", "message": "slow down"}},
        )

    provider = _provider(handler)
    request = InvocationRequest(messages=[Message(role="user", content="hi")])
    with pytest.raises(LLMAPIError) as excinfo:
        [chunk async for chunk in provider.complete_streaming(request)]
    await provider.close()

    assert excinfo.value.status_code == 429
    assert excinfo.value.headers["retry-after"] == "3"
    assert excinfo.value.code == "rate_limit_exceeded"


@pytest.mark.asyncio
async def test_connect_failure_raises_transport_error_with_code():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)
    request = InvocationRequest(messages=[Message(role="user", content="hi")])
    with pytest.raises(LLMTransportError) as excinfo:
        await provider.complete(request)
    await provider.close()

    assert excinfo.value.code == "ECONNREFUSED"


@pytest.mark.asyncio
async def test_mid_stream_error_payload_raises_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_sse(
                {"choices": [{"delta": {"content": "par"}}]},
                {"error": {"code": 502, "message": "upstream provider went away"}},
            ),
        )

    provider = _provider(handler)
    request = InvocationRequest(messages=[Message(role="user", content="hi")])
    received = []
    with pytest.raises(LLMAPIError) as excinfo:
        async for chunk in provider.complete_streaming(request):
            received.append(chunk)
    await provider.close()

    assert [c.text for c in received] == ["par"]
    assert excinfo.value.status_code == 502
    assert "upstream provider went away" in str(excinfo.value)


@pytest.mark.asyncio
async def test_mid_stream_error_with_string_code_keeps_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse({"error": {"code": "rate_limit_exceeded", "message": "slow"}}))

    provider = _provider(handler)
    request = InvocationRequest(messages=[Message(role="user", content="hi")])
    with pytest.raises(LLMAPIError) as excinfo:
        await provider.complete(request)
    await provider.close()

    assert excinfo.value.status_code is None
    assert excinfo.value.code == "rate_limit_exceeded"
