import asyncio
import json
from pathlib import Path

import pytest

from codeloop.tools.approval import (
    ALLOW_PREFIXES_ENV,
    APPROVED_BY_PREFIX,
    APPROVED_ONCE,
    CANCELLED,
    TIMED_OUT,
    YOLO_APPROVED,
    ApprovalGate,
    ApprovalStore,
    CommandApprovalRequest,
)
from codeloop.tools.command_policy import command_key


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _gate(tmp_path: Path, **kwargs) -> ApprovalGate:
    kwargs.setdefault("environ", {})
    kwargs.setdefault("poll_interval", 0.01)
    return ApprovalGate(ApprovalStore(tmp_path / "bash-approval.json"), **kwargs)


async def _wait_for_pending(gate: ApprovalGate) -> CommandApprovalRequest:
    for _ in range(200):
        pending = gate.pending()
        if pending:
            return pending[0]
        await asyncio.sleep(0.005)
    raise AssertionError("no pending approval appeared")


@pytest.mark.asyncio
async def test_yolo_approves_immediately(tmp_path: Path):
    gate = _gate(tmp_path, yolo=True)
    outcome = await gate.authorize("make build", "/w")
    assert outcome.status == YOLO_APPROVED
    assert outcome.approved is True


@pytest.mark.asyncio
async def test_allow_prefix_approves_and_merges_sources(tmp_path: Path):
    store = ApprovalStore(tmp_path / "bash-approval.json")
    store.path.write_text(json.dumps({"yolo": False, "allowPrefixes": ["git status"], "allowOnce": {}}))
    gate = ApprovalGate(
        store,
        allow_prefixes=["npm  test"],
        environ={ALLOW_PREFIXES_ENV: "ls, pytest"},
        poll_interval=0.01,
    )

    assert gate.policy.allow_prefixes == ["ls", "pytest", "npm test", "git status"]
    assert (await gate.authorize("npm test --watch", "/w")).status == APPROVED_BY_PREFIX
    assert (await gate.authorize("GIT STATUS", "/w")).status == APPROVED_BY_PREFIX


@pytest.mark.asyncio
async def test_policy_changes_are_persisted_with_camel_case_keys(tmp_path: Path):
    gate = _gate(tmp_path)
    gate.add_allow_prefix("cargo   build")
    gate.set_yolo(True)

    saved = json.loads((tmp_path / "bash-approval.json").read_text())
    assert saved["allowPrefixes"] == ["cargo build"]
    assert saved["yolo"] is True

    gate.remove_allow_prefix("CARGO BUILD")
    saved = json.loads((tmp_path / "bash-approval.json").read_text())
    assert saved["allowPrefixes"] == []


def test_unreadable_policy_file_falls_back_to_defaults(tmp_path: Path):
    path = tmp_path / "bash-approval.json"
    path.write_text("{not json")
    policy = ApprovalStore(path).load()
    assert policy.yolo is False
    assert policy.allow_prefixes == []


@pytest.mark.asyncio
async def test_pending_command_approved_once(tmp_path: Path):
    gate = _gate(tmp_path)
    announced: list[CommandApprovalRequest] = []

    waiter = asyncio.create_task(gate.authorize("make deploy", "/w", on_pending=announced.append))
    request = await _wait_for_pending(gate)

    assert announced == [request]
    assert request.id.startswith("approval_")
    assert request.key == command_key("make deploy", "/w")
    assert gate.status()["pending"] == 1

    assert gate.approve_once(request.id) is True
    outcome = await asyncio.wait_for(waiter, timeout=1)

    assert outcome.status == APPROVED_ONCE
    assert gate.pending() == []
    assert gate.policy.allow_once == {}


@pytest.mark.asyncio
async def test_allow_once_grant_is_single_use(tmp_path: Path):
    gate = _gate(tmp_path, wait_timeout=0.05)
    waiter = asyncio.create_task(gate.authorize("make deploy", "/w"))
    gate.approve_once((await _wait_for_pending(gate)).id)
    assert (await waiter).status == APPROVED_ONCE

    again = await gate.authorize("make deploy", "/w")
    assert again.status == TIMED_OUT


@pytest.mark.asyncio
async def test_allow_once_grant_expires(tmp_path: Path):
    clock = FakeClock()
    gate = _gate(tmp_path, wait_timeout=0.05, allow_once_ttl=600, clock=clock)
    key = command_key("make deploy", "/w")
    gate.policy.allow_once[key] = int((clock.now + 600) * 1000)

    clock.now += 601
    outcome = await gate.authorize("make deploy", "/w")

    assert outcome.status == TIMED_OUT
    assert key not in gate.policy.allow_once


@pytest.mark.asyncio
async def test_cancel_reports_reason(tmp_path: Path):
    gate = _gate(tmp_path)
    waiter = asyncio.create_task(gate.authorize("make deploy", "/w"))
    request = await _wait_for_pending(gate)

    assert gate.cancel(request.id, "user said no") is True
    outcome = await asyncio.wait_for(waiter, timeout=1)

    assert outcome.status == CANCELLED
    assert outcome.reason == "user said no"
    assert outcome.approved is False
    assert gate.cancel(request.id) is False


@pytest.mark.asyncio
async def test_abort_event_cancels_wait(tmp_path: Path):
    gate = _gate(tmp_path)
    abort = asyncio.Event()
    waiter = asyncio.create_task(gate.authorize("make deploy", "/w", abort_event=abort))
    await _wait_for_pending(gate)

    abort.set()
    outcome = await asyncio.wait_for(waiter, timeout=1)

    assert outcome.status == CANCELLED
    assert outcome.reason == "aborted"
    assert gate.pending() == []


@pytest.mark.asyncio
async def test_wait_times_out(tmp_path: Path):
    gate = _gate(tmp_path, wait_timeout=0.05)
    outcome = await gate.authorize("make deploy", "/w")
    assert outcome.status == TIMED_OUT
    assert gate.pending() == []


@pytest.mark.asyncio
async def test_pending_is_newest_first(tmp_path: Path):
    clock = FakeClock()
    gate = _gate(tmp_path, clock=clock)
    first = asyncio.create_task(gate.authorize("make a", "/w"))
    await _wait_for_pending(gate)
    clock.now += 1
    second = asyncio.create_task(gate.authorize("make b", "/w"))
    for _ in range(200):
        if len(gate.pending()) == 2:
            break
        await asyncio.sleep(0.005)

    assert [r.command for r in gate.pending()] == ["make b", "make a"]

    for request in gate.pending():
        gate.cancel(request.id)
    await asyncio.gather(first, second)
