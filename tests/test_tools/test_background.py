import asyncio
from pathlib import Path

import pytest

from codeloop.tools.background import (
    COMPLETED,
    FAILED,
    KILLED,
    RUNNING,
    BackgroundProcessSupervisor,
    ProcessTool,
)


async def _wait_until_done(supervisor: BackgroundProcessSupervisor, process_id: str) -> None:
    for _ in range(400):
        if supervisor.status(process_id).status != RUNNING:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{process_id} still running")


@pytest.mark.asyncio
async def test_completed_process_keeps_interleaved_output(tmp_path: Path):
    supervisor = BackgroundProcessSupervisor()
    process_id = await supervisor.start("echo out; echo err >&2; echo done", tmp_path)
    await _wait_until_done(supervisor, process_id)

    info = supervisor.status(process_id)
    assert info.status == COMPLETED
    assert info.exit_code == 0
    assert info.recent_output == ["out", "err", "done"]


@pytest.mark.asyncio
async def test_failed_process_records_exit_code(tmp_path: Path):
    supervisor = BackgroundProcessSupervisor()
    process_id = await supervisor.start("exit 4", tmp_path)
    await _wait_until_done(supervisor, process_id)

    info = supervisor.status(process_id)
    assert info.status == FAILED
    assert info.exit_code == 4


@pytest.mark.asyncio
async def test_output_ring_buffer_keeps_last_lines(tmp_path: Path):
    supervisor = BackgroundProcessSupervisor(max_lines=3)
    process_id = await supervisor.start("for i in 1 2 3 4 5; do echo line$i; done", tmp_path)
    await _wait_until_done(supervisor, process_id)

    assert supervisor.status(process_id).recent_output == ["line3", "line4", "line5"]
    assert supervisor.status(process_id, lines=1).recent_output == ["line5"]


@pytest.mark.asyncio
async def test_kill_terminates_process_group(tmp_path: Path):
    supervisor = BackgroundProcessSupervisor(kill_grace_seconds=1.0)
    process_id = await supervisor.start("sleep 30", tmp_path)

    assert await supervisor.kill(process_id) is True
    assert supervisor.status(process_id).status == KILLED
    assert await supervisor.kill(process_id) is False
    assert await supervisor.kill("bg_404") is False
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_process_tool_actions(tmp_path: Path):
    supervisor = BackgroundProcessSupervisor()
    tool = ProcessTool(supervisor)

    assert (await tool.execute(action="list")).content == "No background processes."

    process_id = await supervisor.start("echo ready; sleep 30", tmp_path)
    for _ in range(200):
        if supervisor.status(process_id).recent_output:
            break
        await asyncio.sleep(0.01)

    listing = await tool.execute(action="list")
    assert process_id in listing.content

    status = await tool.execute(action="status", process_id=process_id)
    assert status.content.startswith(f"{process_id}: running")
    assert "ready" in status.content

    killed = await tool.execute(action="kill", process_id=process_id)
    assert killed.content == f"Killed {process_id}"

    again = await tool.execute(action="kill", process_id=process_id)
    assert again.success is False
    assert "not running" in again.error

    missing = await tool.execute(action="status", process_id="bg_99")
    assert missing.error == "Unknown process: bg_99"

    assert (await tool.execute(action="status")).success is False
    await supervisor.shutdown()
