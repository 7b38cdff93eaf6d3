"""Agent loop: model turns interleaved with tool execution."""

import asyncio
from enum import Enum
from typing import Any, AsyncIterator, Callable

from codeloop import events
from codeloop.config import Config, get_config
from codeloop.events import AgentEvent
from codeloop.exceptions import CodeloopError, LLMError, OperationAbortedError, format_error_message
from codeloop.llm import (
    InvocationRequest,
    LLMProvider,
    Message,
    ToolCall,
    add_usage,
    empty_usage,
)
from codeloop.llm.resolver import ModelHandle, ProviderConfig, ProviderResolver
from codeloop.logging import get_logger
from codeloop.middleware import build_middleware_chain
from codeloop.middleware.journal import StreamJournalStore, new_stream_id
from codeloop.tools.registry import ToolProgress, ToolRegistry, ToolResult

log = get_logger(__name__)

MIN_ITERATIONS = 1
MAX_ITERATIONS = 250

_CANCELLED = object()


class AgentState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting-model"
    MODEL_STREAMING = "model-streaming"
    AWAITING_TOOL = "awaiting-tool"
    TOOL_EXECUTING = "tool-executing"
    FINISHED = "finished"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class Agent:
    """Drive one conversation through model and tool turns.

    The model is reached either through an explicit ``provider`` (usually a
    middleware chain) or, lazily, through ``resolver`` + ``provider_config``.
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        tools: ToolRegistry | None = None,
        config: Config | None = None,
        resolver: ProviderResolver | None = None,
        provider_config: ProviderConfig | None = None,
        journal_store: StreamJournalStore | None = None,
        chain_builder: Callable[[ModelHandle], LLMProvider] | None = None,
        max_iterations: int | None = None,
        system_prompt: str | None = None,
    ):
        self.config = config or get_config()
        self.provider = provider
        self.tools = tools
        self.resolver = resolver
        self.provider_config = provider_config
        self.journal_store = journal_store
        self._chain_builder = chain_builder
        self.max_iterations = int(max_iterations if max_iterations is not None else self.config.agent.max_iterations)
        if not MIN_ITERATIONS <= self.max_iterations <= MAX_ITERATIONS:
            raise ValueError(f"max_iterations must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}")
        self.system_prompt = system_prompt if system_prompt is not None else self.config.agent.system_prompt
        self.state = AgentState.IDLE
        self.last_stream_id: str | None = None
        self.messages: list[Message] = []
        self._cancel_event = asyncio.Event()
        self._orphans: set[asyncio.Task[Any]] = set()

    def cancel(self) -> None:
        """Ask the running loop to stop at its next suspension point."""
        log.info("Agent cancel requested", state=self.state.value)
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def resume(self, stream_id: str) -> AsyncIterator[Any]:
        """Replay the journaled chunks of an interrupted model stream."""
        if self.journal_store is None:
            return
        async for chunk in self.journal_store.replay(stream_id):
            yield chunk

    def _build_chain(self, handle: ModelHandle) -> LLMProvider:
        if self._chain_builder is not None:
            return self._chain_builder(handle)
        return build_middleware_chain(handle, config=self.config, journal_store=self.journal_store)

    def _ensure_provider(self) -> LLMProvider:
        if self.provider is None:
            if self.resolver is None or self.provider_config is None:
                raise CodeloopError("No model provider configured", hint="Pass a provider or a resolver with a provider config.")
            self.provider = self._build_chain(self.resolver.resolve(self.provider_config))
        return self.provider

    async def _next_or_cancel(self, awaitable: Any) -> Any:
        """Await ``awaitable`` unless the cancel signal fires first."""
        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
        if work in done:
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        except Exception as e:
            log.debug("Discarded result after cancel", error=str(e))
        return _CANCELLED

    def _error_event(self, step: int, error: BaseException) -> AgentEvent:
        self.state = AgentState.ERRORED
        if isinstance(error, CodeloopError):
            message = format_error_message(error) if isinstance(error, LLMError) else str(error)
            hint, chain = error.hint, error.cause_chain()
        else:
            message, hint, chain = format_error_message(error), None, []
        log.error("Agent run failed", step=step, error=str(error), error_type=type(error).__name__)
        return events.error(step, message, hint=hint, cause_chain=chain, error_type=type(error).__name__)

    def _cancelled_event(self, step: int) -> AgentEvent:
        self.state = AgentState.CANCELLED
        log.info("Agent run cancelled", step=step)
        return events.cancelled(step)

    async def _run_tool(self, step: int, call: ToolCall, queue: asyncio.Queue[AgentEvent]) -> ToolResult:
        """Execute one tool call; never raises except on task cancellation."""
        await queue.put(events.tool_start(step, call))

        async def _progress(update: ToolProgress) -> None:
            await queue.put(events.tool_progress(step, call, update.message, update.data))

        try:
            if self.tools is None:
                raise CodeloopError(f"Tool not found: {call.name}")
            result = await self.tools.execute(
                call.name,
                dict(call.arguments or {}),
                cancel_event=self._cancel_event,
                on_progress=_progress,
            )
        except Exception as e:
            log.warning("Tool call failed", tool=call.name, call_id=call.id, error=str(e))
            result = ToolResult(success=False, error=str(e))
            await queue.put(events.status(step, f"Tool {call.name} failed: {e}", tool_name=call.name))
        await queue.put(events.tool_result(step, call, result.text(), result.is_error))
        return result

    async def _execute_tools(self, step: int, calls: list[ToolCall]) -> AsyncIterator[AgentEvent | object]:
        """Run a step's tool calls concurrently, yielding their events as they arrive."""
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        tasks = [asyncio.create_task(self._run_tool(step, call, queue)) for call in calls]
        self.state = AgentState.TOOL_EXECUTING
        remaining = len(calls)
        while remaining:
            item = await self._next_or_cancel(queue.get())
            if item is _CANCELLED:
                for task in tasks:
                    if not task.done():
                        self._orphans.add(task)
                        task.add_done_callback(self._orphans.discard)
                yield _CANCELLED
                return
            yield item
            if item.type == events.TOOL_RESULT:
                remaining -= 1
        for call, task in zip(calls, tasks):
            result = task.result()
            self.messages.append(
                Message(
                    role="tool",
                    content=result.text(),
                    tool_call_id=call.id,
                    tool_name=call.name,
                    is_error=result.is_error,
                )
            )

    async def stream(self, messages: list[Message] | str) -> AsyncIterator[AgentEvent]:
        """Run the loop over ``messages`` and yield its events in order."""
        if isinstance(messages, str):
            messages = [Message(role="user", content=messages)]
        self.messages = list(messages)
        self._cancel_event = asyncio.Event()
        self.state = AgentState.IDLE

        step_usages: list[dict[str, int]] = []
        total_usage = empty_usage()
        final_text = ""

        if self.provider is None and self.resolver is not None and self.provider_config is not None:
            validation = self.resolver.validate(self.provider_config)
            if not validation.valid:
                yield self._error_event(0, CodeloopError(validation.reason or "Invalid provider configuration"))
                return
        try:
            provider = self._ensure_provider()
        except CodeloopError as e:
            yield self._error_event(0, e)
            return

        tool_defs = self.tools.tool_definitions() if self.tools is not None else []

        for step in range(1, self.max_iterations + 1):
            if self.cancelled:
                yield self._cancelled_event(step)
                return

            self.state = AgentState.AWAITING_MODEL
            yield events.step_start(step)

            request = InvocationRequest(
                messages=list(self.messages),
                system=self.system_prompt,
                tools=tool_defs,
                stream_id=new_stream_id(),
                abort_event=self._cancel_event,
            )
            self.last_stream_id = request.stream_id

            text_parts: list[str] = []
            calls: list[ToolCall] = []
            step_usage = empty_usage()
            finish_reason = "stop"
            chunks = provider.complete_streaming(request)
            try:
                while True:
                    chunk = await self._next_or_cancel(chunks.__anext__())
                    if chunk is _CANCELLED:
                        yield self._cancelled_event(step)
                        return
                    self.state = AgentState.MODEL_STREAMING
                    if chunk.type == "text-delta":
                        text_parts.append(chunk.text)
                        yield events.text_delta(step, chunk.text)
                    elif chunk.type == "reasoning-delta":
                        yield events.reasoning_delta(step, chunk.text)
                    elif chunk.type == "tool-call" and chunk.tool_call is not None:
                        calls.append(chunk.tool_call)
                        yield events.tool_call(step, chunk.tool_call)
                    elif chunk.type == "finish":
                        add_usage(step_usage, chunk.usage)
                        finish_reason = chunk.finish_reason or finish_reason
                    elif chunk.type == "error":
                        raise LLMError(chunk.error or "Model stream failed")
            except StopAsyncIteration:
                pass
            except OperationAbortedError:
                yield self._cancelled_event(step)
                return
            except Exception as e:
                yield self._error_event(step, e)
                return
            finally:
                await chunks.aclose()

            step_usages.append(step_usage)
            add_usage(total_usage, step_usage)
            text = "".join(text_parts)
            if text:
                final_text = text
            self.messages.append(Message(role="assistant", content=text, tool_calls=list(calls)))

            if not calls:
                yield events.step_finish(step, step_usage, finish_reason)
                self.state = AgentState.FINISHED
                yield events.finish(step, final_text, total_usage, step_usages, finish_reason)
                return

            self.state = AgentState.AWAITING_TOOL
            async for item in self._execute_tools(step, calls):
                if item is _CANCELLED:
                    yield self._cancelled_event(step)
                    return
                yield item
            yield events.step_finish(step, step_usage, finish_reason)

        log.info("Agent reached iteration cap", max_iterations=self.max_iterations)
        self.state = AgentState.FINISHED
        yield events.finish(self.max_iterations, final_text, total_usage, step_usages, "max-steps")

    async def run(self, messages: list[Message] | str) -> list[AgentEvent]:
        """Collect every event of a run."""
        return [event async for event in self.stream(messages)]
