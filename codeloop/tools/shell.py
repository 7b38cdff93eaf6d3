"""Shell tool: gated command execution inside the workspace."""

import asyncio
import os
from pathlib import Path
from typing import Any, AsyncIterator

from codeloop.config import ShellToolConfig
from codeloop.exceptions import ToolBlockedError
from codeloop.logging import get_logger
from codeloop.tools.approval import TIMED_OUT, ApprovalGate, CommandApprovalRequest
from codeloop.tools.background import BackgroundProcessSupervisor
from codeloop.tools.command_policy import check_command
from codeloop.tools.registry import Tool, ToolProgress, ToolResult

log = get_logger(__name__)

TRUNCATION_MARKER = "\n... (output truncated)"


def _approval_prompt(request: CommandApprovalRequest) -> str:
    return "\n".join([
        "Shell command requires approval.",
        f"Reason: {request.reason}",
        f"Command: {request.command}",
        f"Workdir: {request.workdir}",
        f"Approval ID: {request.id}",
        "",
        "Waiting for approval...",
    ])


def is_within_workspace(path: Path, workspace: Path) -> bool:
    try:
        path.resolve().relative_to(workspace.resolve())
    except ValueError:
        return False
    return True


class ShellTool(Tool):
    """Execute shell commands behind the security check and approval gate."""

    name = "shell"
    description = (
        "Execute a shell command inside the workspace and return its output. "
        "Dangerous commands are blocked; others may need user approval. "
        "Use run_in_background for long-running commands."
    )
    # Approval waits and command timeouts are handled here, not by the registry.
    timeout_seconds = None
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "workdir": {
                "type": "string",
                "description": "Working directory, relative to the workspace (default: workspace root)",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (max 600)",
            },
            "run_in_background": {
                "type": "boolean",
                "description": "Start the command in the background and return its process id",
            },
        },
        "required": ["command"],
    }

    def __init__(
        self,
        gate: ApprovalGate,
        supervisor: BackgroundProcessSupervisor,
        config: ShellToolConfig | None = None,
        workspace: Path | str | None = None,
    ):
        self.gate = gate
        self.supervisor = supervisor
        self.config = config or ShellToolConfig()
        self.workspace = Path(workspace).expanduser().resolve() if workspace else None

    def _resolve_workdir(self, workdir: str | None, workspace: Path) -> Path:
        if not workdir:
            return workspace
        candidate = Path(workdir).expanduser()
        if not candidate.is_absolute():
            candidate = workspace / candidate
        return candidate.resolve()

    def _truncate(self, output: str) -> str:
        limit = self.config.max_output_chars
        if len(output) > limit:
            return output[:limit] + TRUNCATION_MARKER
        return output

    async def _authorize(self, command: str, workdir: Path, cancel_event: asyncio.Event | None):
        """Run the approval gate, surfacing the pending request as it appears."""
        announcements: asyncio.Queue[CommandApprovalRequest] = asyncio.Queue()
        approval = asyncio.create_task(
            self.gate.authorize(
                command,
                str(workdir),
                on_pending=announcements.put_nowait,
                abort_event=cancel_event,
            )
        )
        announced = asyncio.create_task(announcements.get())
        try:
            done, _ = await asyncio.wait({approval, announced}, return_when=asyncio.FIRST_COMPLETED)
            if announced in done:
                request = announced.result()
                yield ToolProgress(
                    message=_approval_prompt(request),
                    data={"approval_id": request.id, "command": request.command},
                )
            yield await approval
        finally:
            announced.cancel()
            if not approval.done():
                approval.cancel()

    async def _run(self, command: str, workdir: Path, timeout: float, abort_event: asyncio.Event | None) -> ToolResult:
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        log.info("Executing shell command", command=command, cwd=str(workdir), timeout=timeout)
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(workdir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )

        communicate_task = asyncio.create_task(process.communicate())
        abort_wait_task: asyncio.Task[bool] | None = None
        if abort_event is not None:
            abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(wait_tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if communicate_task not in done:
                process.kill()
                await process.wait()
                communicate_task.cancel()
                try:
                    await communicate_task
                except asyncio.CancelledError:
                    pass
                if abort_wait_task is not None and abort_wait_task in done:
                    return ToolResult(success=False, error="Command aborted")
                timeout_label = int(timeout) if float(timeout).is_integer() else timeout
                return ToolResult(success=False, error=f"Command timed out after {timeout_label}s")
            stdout, stderr = communicate_task.result()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            communicate_task.cancel()
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")
        output = stdout_text
        if stderr_text:
            output += ("\n" if output else "") + stderr_text
        output = self._truncate(output)

        if process.returncode != 0:
            return ToolResult(content=f"Exit code: {process.returncode}\n{output or '(no output)'}")
        return ToolResult(content=output or "(no output)")

    async def execute(
        self,
        command: str,
        workdir: str | None = None,
        timeout: float | None = None,
        run_in_background: bool = False,
        **kwargs: Any,
    ) -> AsyncIterator[ToolResult | ToolProgress]:
        """Check, approve and run ``command``; progress first, result last."""
        workspace = Path(kwargs.get("_workspace_path") or self.workspace or Path.cwd()).resolve()
        abort_event = kwargs.get("_abort_event")
        cancel_event = kwargs.get("_cancel_event")
        working_dir = self._resolve_workdir(workdir, workspace)

        if not is_within_workspace(working_dir, workspace):
            yield ToolResult(
                success=False,
                error=(
                    "Cannot run commands outside the workspace.\n"
                    f"Workspace: {workspace}\nRequested: {working_dir}"
                ),
            )
            return

        check = check_command(command)
        if check.blocked:
            log.warning("Blocked unsafe command", command=command, category=check.category)
            blocked = ToolBlockedError(self.name, check.reason or "Blocked", category=check.category)
            yield ToolResult(success=False, error=blocked.summary())
            return

        outcome = None
        async for item in self._authorize(command, working_dir, cancel_event):
            if isinstance(item, ToolProgress):
                yield item
            else:
                outcome = item
        if outcome is None or not outcome.approved:
            if outcome is not None and outcome.status == TIMED_OUT:
                yield ToolResult(success=False, error="Shell command approval timed out.")
            else:
                detail = f" ({outcome.reason})" if outcome is not None and outcome.reason else ""
                yield ToolResult(success=False, error=f"Cancelled: shell command not approved{detail}.")
            return
        log.debug("Shell command approved", status=outcome.status)

        if check.warning:
            yield ToolProgress(message=f"Warning: {check.warning}", data={"warning": check.warning})

        if run_in_background:
            process_id = await self.supervisor.start(command, working_dir)
            short = command[:100] + ("..." if len(command) > 100 else "")
            yield ToolResult(
                content=(
                    f"Started background process: {process_id}\nCommand: {short}\n"
                    f"Use the process tool with action 'status' and process_id '{process_id}' to check progress."
                )
            )
            return

        if timeout is None:
            timeout = self.config.timeout
        timeout = min(max(1.0, float(timeout)), float(self.config.max_timeout))

        yield ToolProgress(message=f"$ {command[:80]}{'...' if len(command) > 80 else ''}")
        yield await self._run(command, working_dir, timeout, abort_event)

