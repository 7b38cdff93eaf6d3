"""Tool registry and base tool class."""

import asyncio
import inspect
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from pydantic import BaseModel, Field, model_validator

from codeloop.exceptions import ToolExecutionError, ToolNotFoundError
from codeloop.llm import ToolDefinition
from codeloop.logging import get_logger

log = get_logger(__name__)

ProgressCallback = Callable[["ToolProgress"], Awaitable[None] | None]


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    @property
    def is_error(self) -> bool:
        return not self.success

    def text(self) -> str:
        """What the model gets to read."""
        if self.success:
            return self.content
        return self.error or self.content


class ToolProgress(BaseModel):
    """Intermediate update from a streaming tool."""

    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class Tool(ABC):
    """Base class for all tools.

    ``execute`` either returns a ``ToolResult`` or is an async generator whose
    items are progress updates (``str`` or ``ToolProgress``) followed by one
    terminal ``ToolResult``.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = 30.0

    @abstractmethod
    def execute(self, **kwargs: Any) -> Awaitable[ToolResult] | AsyncIterator[ToolResult | ToolProgress | str]:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult, or an async iterator ending in one
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            Function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check required arguments are present.

        Raises:
            ToolExecutionError if one is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, workspace_path: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self._workspace_path = Path.cwd()
        self.set_workspace_path(workspace_path or Path.cwd())

    def set_workspace_path(self, path: Path | str) -> None:
        """Set the root every tool is confined to."""
        self._workspace_path = Path(path).expanduser().resolve()

    @property
    def workspace_path(self) -> Path:
        return self._workspace_path

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self) -> list[ToolDefinition]:
        return [ToolDefinition(**tool.get_definition()) for tool in self._tools.values()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    @staticmethod
    async def _drive(
        name: str,
        outcome: Awaitable[ToolResult] | AsyncIterator[Any],
        on_progress: ProgressCallback | None,
    ) -> ToolResult:
        """Run one tool invocation to its terminal result."""
        if not inspect.isasyncgen(outcome):
            return await outcome

        final: ToolResult | None = None
        try:
            async for item in outcome:
                if isinstance(item, ToolResult):
                    final = item
                    continue
                progress = item if isinstance(item, ToolProgress) else ToolProgress(message=str(item))
                if on_progress is not None:
                    maybe = on_progress(progress)
                    if inspect.isawaitable(maybe):
                        await maybe
        finally:
            await outcome.aclose()
        if final is None:
            raise ToolExecutionError(name, "Tool finished without a result")
        return final

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        ``abort_event`` force-cancels the tool. ``cancel_event`` is only handed
        to the tool so it can stop waiting on its own.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = tool.timeout_seconds
            if timeout_seconds is not None:
                timeout_seconds = max(1.0, float(timeout_seconds))

            if abort_event is not None:
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            outcome = tool.execute(
                **arguments,
                _workspace_path=self.workspace_path,
                _abort_event=tool_abort_event,
                _cancel_event=cancel_event,
            )
            execute_task = asyncio.create_task(self._drive(name, outcome, on_progress))
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)
