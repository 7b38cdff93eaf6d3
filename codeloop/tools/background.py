"""Supervisor for detached background shell processes."""

import asyncio
import itertools
import os
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codeloop.logging import get_logger
from codeloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
KILLED = "killed"


@dataclass
class BackgroundProcess:
    id: str
    command: str
    cwd: str
    process: asyncio.subprocess.Process = field(repr=False)
    started_at: float
    output: deque[str]
    status: str = RUNNING
    exit_code: int | None = None
    reader: asyncio.Task[None] | None = field(default=None, repr=False)


@dataclass
class ProcessStatus:
    id: str
    command: str
    status: str
    exit_code: int | None
    recent_output: list[str]
    started_at: float


class BackgroundProcessSupervisor:
    """Start, watch and kill detached shell processes.

    Output from stdout and stderr is interleaved in arrival order and kept in
    a ring buffer of ``max_lines`` lines. Records live in memory only.
    """

    def __init__(self, max_lines: int = 500, kill_grace_seconds: float = 2.0):
        self.max_lines = max(1, int(max_lines))
        self.kill_grace_seconds = kill_grace_seconds
        self._processes: dict[str, BackgroundProcess] = {}
        self._counter = itertools.count(1)

    async def start(self, command: str, cwd: str | Path) -> str:
        """Spawn ``command`` in its own session and return its process id."""
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        record = BackgroundProcess(
            id=f"bg_{next(self._counter)}",
            command=command,
            cwd=str(cwd),
            process=process,
            started_at=time.time(),
            output=deque(maxlen=self.max_lines),
        )
        self._processes[record.id] = record
        record.reader = asyncio.create_task(self._pump(record))
        log.info("Background process started", process_id=record.id, pid=process.pid, command=command)
        return record.id

    async def _pump(self, record: BackgroundProcess) -> None:
        stream = record.process.stdout
        if stream is not None:
            while True:
                line = await stream.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip("\r\n")
                if text:
                    record.output.append(text)
        code = await record.process.wait()
        record.exit_code = code
        if record.status == RUNNING:
            record.status = COMPLETED if code == 0 else FAILED
        log.info("Background process exited", process_id=record.id, status=record.status, exit_code=code)

    def _snapshot(self, record: BackgroundProcess, lines: int | None = None) -> ProcessStatus:
        output = list(record.output)
        if lines is not None:
            output = output[-lines:] if lines > 0 else []
        return ProcessStatus(
            id=record.id,
            command=record.command,
            status=record.status,
            exit_code=record.exit_code,
            recent_output=output,
            started_at=record.started_at,
        )

    def status(self, process_id: str, lines: int | None = None) -> ProcessStatus | None:
        record = self._processes.get(process_id)
        if record is None:
            return None
        return self._snapshot(record, lines)

    def list(self) -> list[ProcessStatus]:
        return [self._snapshot(record, lines=0) for record in self._processes.values()]

    def _signal(self, record: BackgroundProcess, sig: int) -> None:
        try:
            os.killpg(record.process.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            record.process.send_signal(sig)

    async def kill(self, process_id: str) -> bool:
        """Terminate a running process (and its group); returns False if not running."""
        record = self._processes.get(process_id)
        if record is None or record.status != RUNNING:
            return False
        record.status = KILLED
        self._signal(record, signal.SIGTERM)
        try:
            await asyncio.wait_for(record.process.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            self._signal(record, signal.SIGKILL)
            await record.process.wait()
        record.exit_code = record.process.returncode
        log.info("Background process killed", process_id=process_id)
        return True

    async def shutdown(self) -> None:
        """Kill every running process and wait for output readers to finish."""
        for record in list(self._processes.values()):
            if record.status == RUNNING:
                await self.kill(record.id)
        readers = [r.reader for r in self._processes.values() if r.reader is not None]
        if readers:
            await asyncio.gather(*readers, return_exceptions=True)


def _format_status(info: ProcessStatus) -> str:
    lines = [f"{info.id}: {info.status}"]
    if info.exit_code is not None:
        lines[0] += f" (exit code {info.exit_code})"
    lines.append(f"Command: {info.command}")
    if info.recent_output:
        lines.append("Output:")
        lines.extend(info.recent_output)
    return "\n".join(lines)


class ProcessTool(Tool):
    """List, inspect and kill background processes started by the shell tool."""

    name = "process"
    description = (
        "Manage background processes started with shell run_in_background. "
        "Actions: list, status (recent output), kill."
    )
    parameters = {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": ["list", "status", "kill"],
                "description": "What to do",
            },
            "process_id": {
                "type": "string",
                "description": "Process id such as bg_1 (status and kill)",
            },
            "lines": {
                "type": "integer",
                "description": "How many recent output lines to include (status only, default 50)",
            },
        },
        "required": ["action"],
    }

    def __init__(self, supervisor: BackgroundProcessSupervisor):
        self.supervisor = supervisor

    async def execute(
        self,
        action: str,
        process_id: str | None = None,
        lines: int = 50,
        **kwargs: Any,
    ) -> ToolResult:
        if action == "list":
            records = self.supervisor.list()
            if not records:
                return ToolResult(content="No background processes.")
            return ToolResult(content="\n".join(
                f"{r.id}\t{r.status}\t{r.command[:80]}" for r in records
            ))

        if not process_id:
            return ToolResult(success=False, error=f"process_id is required for action '{action}'")

        if action == "status":
            info = self.supervisor.status(process_id, lines=int(lines))
            if info is None:
                return ToolResult(success=False, error=f"Unknown process: {process_id}")
            return ToolResult(content=_format_status(info))

        if action == "kill":
            if await self.supervisor.kill(process_id):
                return ToolResult(content=f"Killed {process_id}")
            info = self.supervisor.status(process_id, lines=0)
            if info is None:
                return ToolResult(success=False, error=f"Unknown process: {process_id}")
            return ToolResult(success=False, error=f"{process_id} is not running ({info.status})")

        return ToolResult(success=False, error=f"Unknown action: {action}")
