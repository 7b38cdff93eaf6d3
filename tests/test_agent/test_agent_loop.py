import asyncio

import pytest

from codeloop import events
from codeloop.agent import Agent, AgentState
from codeloop.config import Config
from codeloop.exceptions import LLMAPIError
from codeloop.llm import (
    InvocationRequest,
    LLMProvider,
    LLMResponse,
    Message,
    StreamChunk,
    ToolCall,
    collect_response,
)
from codeloop.llm.resolver import ProviderConfig, ProviderResolver
from codeloop.tools.registry import Tool, ToolRegistry, ToolResult


def _text(text: str, input_tokens: int = 1, output_tokens: int = 1) -> list[StreamChunk]:
    return [
        StreamChunk(type="text-delta", text=text),
        StreamChunk(
            type="finish",
            usage={"input_tokens": input_tokens, "output_tokens": output_tokens},
            finish_reason="stop",
        ),
    ]


def _calls(*calls: ToolCall, text: str = "") -> list[StreamChunk]:
    chunks = [StreamChunk(type="text-delta", text=text)] if text else []
    chunks.extend(StreamChunk(type="tool-call", tool_call=call) for call in calls)
    chunks.append(
        StreamChunk(type="finish", usage={"input_tokens": 2, "output_tokens": 1}, finish_reason="tool-calls")
    )
    return chunks


class ScriptedProvider(LLMProvider):
    """Plays back one chunk list per model step; repeats the last one when exhausted."""

    provider = "fake"
    model = "scripted"

    def __init__(self, steps: list[list[StreamChunk]]):
        self.steps = steps
        self.requests: list[InvocationRequest] = []

    async def complete(self, request: InvocationRequest) -> LLMResponse:
        return collect_response([c async for c in self.complete_streaming(request)])

    async def complete_streaming(self, request: InvocationRequest):
        index = min(len(self.requests), len(self.steps) - 1)
        self.requests.append(request)
        for chunk in self.steps[index]:
            yield chunk


class HangingProvider(LLMProvider):
    provider = "fake"
    model = "hanging"

    async def complete(self, request: InvocationRequest) -> LLMResponse:
        raise NotImplementedError

    async def complete_streaming(self, request: InvocationRequest):
        yield StreamChunk(type="text-delta", text="partial")
        await asyncio.Event().wait()


class FailingProvider(LLMProvider):
    provider = "fake"
    model = "failing"

    async def complete(self, request: InvocationRequest) -> LLMResponse:
        raise NotImplementedError

    async def complete_streaming(self, request: InvocationRequest):
        raise LLMAPIError("boom", status_code=500)
        yield  # pragma: no cover


class EchoTool(Tool):
    name = "echo"
    description = "Echo text back"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    async def execute(self, text: str, **kwargs):
        return ToolResult(content=f"echo: {text}")


class SlowEchoTool(EchoTool):
    name = "slow_echo"

    async def execute(self, text: str, **kwargs):
        await asyncio.sleep(0.05)
        return ToolResult(content=f"slow: {text}")


class ProgressTool(Tool):
    name = "progress"
    description = "Reports progress"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        yield "working"
        yield ToolResult(content="worked")


class FailingTool(Tool):
    name = "broken"
    description = "Always fails"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        return ToolResult(success=False, error="disk full")


class CooperativeTool(Tool):
    name = "wait"
    description = "Waits for the cancel signal"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = None

    def __init__(self):
        self.finished = False

    async def execute(self, **kwargs):
        await kwargs["_cancel_event"].wait()
        self.finished = True
        return ToolResult(success=False, error="stopped")


def _registry(*tools: Tool) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return registry


def _agent(provider: LLMProvider, *tools: Tool, **kwargs) -> Agent:
    return Agent(provider=provider, tools=_registry(*tools), config=Config(), **kwargs)


@pytest.mark.asyncio
async def test_event_order_across_tool_round_trip():
    provider = ScriptedProvider([
        _calls(ToolCall(id="c1", name="echo", arguments={"text": "hi"}), text="Let me check."),
        _text("All done."),
    ])
    agent = _agent(provider, EchoTool())

    emitted = await agent.run("say hi")

    assert [e.type for e in emitted] == [
        events.STEP_START,
        events.TEXT_DELTA,
        events.TOOL_CALL,
        events.TOOL_START,
        events.TOOL_RESULT,
        events.STEP_FINISH,
        events.STEP_START,
        events.TEXT_DELTA,
        events.STEP_FINISH,
        events.FINISH,
    ]
    assert [e.step for e in emitted if e.type == events.STEP_START] == [1, 2]
    result = next(e for e in emitted if e.type == events.TOOL_RESULT)
    assert result.text == "echo: hi"
    assert result.tool_call_id == "c1"
    assert result.is_error is False

    finish = emitted[-1]
    assert finish.text == "All done."
    assert finish.finish_reason == "stop"
    assert agent.state == AgentState.FINISHED


@pytest.mark.asyncio
async def test_tool_results_are_fed_back_to_the_model():
    provider = ScriptedProvider([
        _calls(ToolCall(id="c1", name="echo", arguments={"text": "x"})),
        _text("ok"),
    ])
    agent = _agent(provider, EchoTool(), system_prompt="You are terse.")

    await agent.run([Message(role="user", content="go")])

    second = provider.requests[1]
    assert second.system == "You are terse."
    assert [m.role for m in second.messages] == ["user", "assistant", "tool"]
    assert second.messages[1].tool_calls[0].id == "c1"
    assert second.messages[2].tool_call_id == "c1"
    assert second.messages[2].content == "echo: x"
    assert [t.name for t in second.tools] == ["echo"]
    assert second.stream_id.startswith("stream_")
    assert second.stream_id != provider.requests[0].stream_id


@pytest.mark.asyncio
async def test_usage_is_reported_per_step_and_in_total():
    provider = ScriptedProvider([
        _calls(ToolCall(id="c1", name="echo", arguments={"text": "x"})),
        _text("ok", input_tokens=10, output_tokens=4),
    ])
    agent = _agent(provider, EchoTool())

    emitted = await agent.run("go")

    step_usage = [e.usage for e in emitted if e.type == events.STEP_FINISH]
    assert step_usage == [
        {"input_tokens": 2, "output_tokens": 1, "total_tokens": 3},
        {"input_tokens": 10, "output_tokens": 4, "total_tokens": 14},
    ]
    finish = emitted[-1]
    assert finish.usage == {"input_tokens": 12, "output_tokens": 5, "total_tokens": 17}
    assert finish.data["steps"] == step_usage


@pytest.mark.asyncio
async def test_stops_at_max_iterations():
    provider = ScriptedProvider([_calls(ToolCall(id="loop", name="echo", arguments={"text": "again"}))])
    agent = _agent(provider, EchoTool(), max_iterations=3)

    emitted = await agent.run("loop forever")

    assert len(provider.requests) == 3
    assert [e.type for e in emitted].count(events.STEP_START) == 3
    assert emitted[-1].type == events.FINISH
    assert emitted[-1].finish_reason == "max-steps"
    assert agent.state == AgentState.FINISHED


@pytest.mark.parametrize("value", [0, 251])
def test_max_iterations_must_be_in_range(value: int):
    with pytest.raises(ValueError):
        Agent(provider=ScriptedProvider([_text("x")]), config=Config(), max_iterations=value)


@pytest.mark.asyncio
async def test_parallel_tool_calls_keep_call_order_in_history():
    provider = ScriptedProvider([
        _calls(
            ToolCall(id="slow", name="slow_echo", arguments={"text": "a"}),
            ToolCall(id="fast", name="echo", arguments={"text": "b"}),
        ),
        _text("done"),
    ])
    agent = _agent(provider, EchoTool(), SlowEchoTool())

    emitted = await agent.run("both")

    results = [e.tool_call_id for e in emitted if e.type == events.TOOL_RESULT]
    assert results == ["fast", "slow"]
    history = provider.requests[1].messages
    assert [m.tool_call_id for m in history if m.role == "tool"] == ["slow", "fast"]


@pytest.mark.asyncio
async def test_tool_progress_sits_between_start_and_result():
    provider = ScriptedProvider([_calls(ToolCall(id="p", name="progress", arguments={})), _text("ok")])
    agent = _agent(provider, ProgressTool())

    emitted = await agent.run("go")

    tool_events = [e for e in emitted if e.tool_call_id == "p" and e.type != events.TOOL_CALL]
    assert [e.type for e in tool_events] == [events.TOOL_START, events.TOOL_PROGRESS, events.TOOL_RESULT]
    assert tool_events[1].text == "working"


@pytest.mark.asyncio
async def test_tool_failures_are_reported_and_the_loop_continues():
    provider = ScriptedProvider([
        _calls(
            ToolCall(id="b", name="broken", arguments={}),
            ToolCall(id="m", name="missing", arguments={}),
        ),
        _text("recovered"),
    ])
    agent = _agent(provider, FailingTool())

    emitted = await agent.run("go")

    results = {e.tool_call_id: e for e in emitted if e.type == events.TOOL_RESULT}
    assert results["b"].is_error is True
    assert results["b"].text == "disk full"
    assert results["m"].is_error is True
    assert "Tool not found: missing" in results["m"].text
    assert any(e.type == events.STATUS and e.data.get("tool_name") == "missing" for e in emitted)
    assert emitted[-1].type == events.FINISH
    assert emitted[-1].text == "recovered"


@pytest.mark.asyncio
async def test_provider_error_ends_run_with_error_event():
    agent = _agent(FailingProvider())

    emitted = await agent.run("go")

    assert [e.type for e in emitted] == [events.STEP_START, events.ERROR]
    assert emitted[-1].is_error is True
    assert emitted[-1].text.startswith("Server error (500)")
    assert emitted[-1].data["error_type"] == "LLMAPIError"
    assert agent.state == AgentState.ERRORED


@pytest.mark.asyncio
async def test_error_chunk_ends_run_with_error_event():
    provider = ScriptedProvider([[StreamChunk(type="text-delta", text="a"), StreamChunk(type="error", error="bad")]])
    agent = _agent(provider)

    emitted = await agent.run("go")

    assert emitted[-1].type == events.ERROR
    assert "bad" in emitted[-1].text


@pytest.mark.asyncio
async def test_cancel_during_model_stream():
    agent = _agent(HangingProvider())
    emitted = []

    async def consume():
        async for event in agent.stream("go"):
            emitted.append(event)
            if event.type == events.TEXT_DELTA:
                agent.cancel()

    await asyncio.wait_for(consume(), timeout=2)

    assert [e.type for e in emitted] == [events.STEP_START, events.TEXT_DELTA, events.CANCELLED]
    assert agent.state == AgentState.CANCELLED


@pytest.mark.asyncio
async def test_cancel_during_tools_leaves_them_to_stop_on_their_own():
    tool = CooperativeTool()
    provider = ScriptedProvider([_calls(ToolCall(id="w", name="wait", arguments={})), _text("unreachable")])
    agent = _agent(provider, tool)
    emitted = []

    async def consume():
        async for event in agent.stream("go"):
            emitted.append(event)
            if event.type == events.TOOL_START:
                agent.cancel()

    await asyncio.wait_for(consume(), timeout=2)
    await asyncio.sleep(0.05)

    assert emitted[-1].type == events.CANCELLED
    assert all(e.type != events.FINISH for e in emitted)
    assert len(provider.requests) == 1
    assert tool.finished is True
    assert agent.state == AgentState.CANCELLED


@pytest.mark.asyncio
async def test_next_run_starts_with_a_fresh_cancel_signal():
    provider = ScriptedProvider([_text("hello")])
    agent = _agent(provider)
    agent.cancel()

    emitted = await agent.run("go")

    assert emitted[-1].type == events.FINISH


@pytest.mark.asyncio
async def test_invalid_provider_config_is_reported_before_any_call():
    resolver = ProviderResolver(credential_store=lambda p: None, base_url_store=lambda p: None, environ={})
    agent = Agent(
        tools=_registry(),
        config=Config(),
        resolver=resolver,
        provider_config=ProviderConfig(provider="openai", model="gpt-4o-mini"),
    )

    emitted = await agent.run("go")

    assert len(emitted) == 1
    assert emitted[0].type == events.ERROR
    assert emitted[0].text == "Missing API key for openai. Set OPENAI_API_KEY environment variable."
    assert agent.state == AgentState.ERRORED


@pytest.mark.asyncio
async def test_resume_without_journal_yields_nothing():
    agent = _agent(ScriptedProvider([_text("x")]))
    assert [c async for c in agent.resume("stream_1_a")] == []
