"""Approval workflow for shell commands.

A command that is not covered by yolo mode, a persisted allow-prefix or an
unexpired allow-once grant becomes a pending request. The caller waits until
someone approves it, cancels it, or the deadline passes.
"""

import asyncio
import inspect
import json
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from codeloop.logging import get_logger
from codeloop.tools.command_policy import command_key, normalize_command, prefix_matches

log = get_logger(__name__)

ALLOW_PREFIXES_ENV = "CODELOOP_BASH_ALLOW_PREFIXES"
YOLO_ENV = "CODELOOP_YOLO"

APPROVED_ONCE = "approved-once"
APPROVED_BY_PREFIX = "approved-by-prefix"
YOLO_APPROVED = "yolo-approved"
CANCELLED = "cancelled"
TIMED_OUT = "timed-out"

PENDING_REASON = (
    "This command is not on your allowlist. Shell commands can install "
    "dependencies, modify files, or run scripts."
)


class ApprovalPolicy(BaseModel):
    """Persisted approval state."""

    model_config = ConfigDict(populate_by_name=True)

    yolo: bool = False
    allow_prefixes: list[str] = Field(default_factory=list, alias="allowPrefixes")
    allow_once: dict[str, int] = Field(default_factory=dict, alias="allowOnce")


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write ``content`` to a temp file beside ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class ApprovalStore:
    """JSON document ``{yolo, allowPrefixes, allowOnce}`` on disk."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def load(self) -> ApprovalPolicy:
        if not self.path.exists():
            return ApprovalPolicy()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return ApprovalPolicy.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            log.warning("Ignoring unreadable approval config", path=str(self.path), error=str(e))
            return ApprovalPolicy()

    def save(self, policy: ApprovalPolicy) -> None:
        atomic_write_text(self.path, json.dumps(policy.model_dump(by_alias=True)))


@dataclass
class CommandApprovalRequest:
    id: str
    key: str
    command: str
    workdir: str
    created_at: int
    reason: str = PENDING_REASON


@dataclass
class ApprovalOutcome:
    status: str
    request: CommandApprovalRequest | None = None
    reason: str | None = None

    @property
    def approved(self) -> bool:
        return self.status in (APPROVED_ONCE, APPROVED_BY_PREFIX, YOLO_APPROVED)


def _env_flag(value: str | None) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


class ApprovalGate:
    """Decides whether a shell command may run, asking when it has to."""

    def __init__(
        self,
        store: ApprovalStore,
        yolo: bool = False,
        allow_prefixes: list[str] | None = None,
        wait_timeout: float = 600.0,
        poll_interval: float = 0.1,
        allow_once_ttl: float = 600.0,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self.allow_once_ttl = allow_once_ttl
        self._initial_yolo = yolo
        self._initial_prefixes = list(allow_prefixes or [])
        self._environ = environ if environ is not None else os.environ
        self._clock = clock
        self._policy: ApprovalPolicy | None = None
        self._pending: dict[str, CommandApprovalRequest] = {}
        self._cancelled: dict[str, str | None] = {}
        self._wakeup = asyncio.Event()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def policy(self) -> ApprovalPolicy:
        """Approval state, loaded and merged on first access."""
        if self._policy is None:
            loaded = self.store.load()
            env_prefixes = [
                item.strip()
                for item in str(self._environ.get(ALLOW_PREFIXES_ENV, "")).split(",")
                if item.strip()
            ]
            merged: list[str] = []
            for prefix in [*env_prefixes, *self._initial_prefixes, *loaded.allow_prefixes]:
                normalized = normalize_command(prefix)
                if normalized and normalized not in merged:
                    merged.append(normalized)
            loaded.allow_prefixes = merged
            loaded.yolo = loaded.yolo or self._initial_yolo or _env_flag(self._environ.get(YOLO_ENV))
            self._policy = loaded
        return self._policy

    def _persist(self) -> None:
        self.store.save(self.policy)
        self._notify()

    def _notify(self) -> None:
        previous, self._wakeup = self._wakeup, asyncio.Event()
        previous.set()

    def set_yolo(self, enabled: bool) -> None:
        self.policy.yolo = bool(enabled)
        log.info("Yolo mode changed", enabled=bool(enabled))
        self._persist()

    def add_allow_prefix(self, prefix: str) -> None:
        normalized = normalize_command(prefix)
        if not normalized:
            return
        if normalized not in self.policy.allow_prefixes:
            self.policy.allow_prefixes.append(normalized)
        self._persist()

    def remove_allow_prefix(self, prefix: str) -> None:
        normalized = normalize_command(prefix).lower()
        if not normalized:
            return
        self.policy.allow_prefixes = [
            p for p in self.policy.allow_prefixes if normalize_command(p).lower() != normalized
        ]
        self._persist()

    def approve_once(self, approval_id: str) -> bool:
        """Grant a single-use, time-boxed approval for a pending request."""
        request = self._pending.pop(approval_id, None)
        if request is None:
            return False
        self.policy.allow_once[request.key] = self._now_ms() + int(self.allow_once_ttl * 1000)
        log.info("Command approved once", approval_id=approval_id, command=request.command)
        self._persist()
        return True

    def cancel(self, approval_id: str, reason: str | None = None) -> bool:
        if approval_id not in self._pending:
            return False
        del self._pending[approval_id]
        self._cancelled[approval_id] = reason
        log.info("Command approval cancelled", approval_id=approval_id, reason=reason)
        self._notify()
        return True

    def pending(self) -> list[CommandApprovalRequest]:
        """Pending requests, newest first."""
        return sorted(self._pending.values(), key=lambda r: r.created_at, reverse=True)

    def status(self) -> dict[str, Any]:
        return {
            "yolo": self.policy.yolo,
            "allow_prefixes": list(self.policy.allow_prefixes),
            "pending": len(self._pending),
        }

    def _prune_allow_once(self) -> None:
        now = self._now_ms()
        expired = [k for k, expires_at in self.policy.allow_once.items() if not expires_at or expires_at <= now]
        if not expired:
            return
        for key in expired:
            del self.policy.allow_once[key]
        self.store.save(self.policy)

    def _decide(self, command: str, key: str) -> str | None:
        """Immediate approval status, consuming an allow-once grant if used."""
        self._prune_allow_once()
        if key in self.policy.allow_once:
            del self.policy.allow_once[key]
            self.store.save(self.policy)
            return APPROVED_ONCE
        if any(prefix_matches(command, p) for p in self.policy.allow_prefixes):
            return APPROVED_BY_PREFIX
        if self.policy.yolo:
            return YOLO_APPROVED
        return None

    async def authorize(
        self,
        command: str,
        workdir: str,
        on_pending: Callable[[CommandApprovalRequest], Awaitable[None] | None] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ApprovalOutcome:
        """Resolve approval for ``command`` in ``workdir``, waiting if needed."""
        key = command_key(command, workdir)
        status = self._decide(command, key)
        if status is not None:
            return ApprovalOutcome(status)

        request = CommandApprovalRequest(
            id=f"approval_{self._now_ms()}_{key[:8]}",
            key=key,
            command=normalize_command(command),
            workdir=str(workdir),
            created_at=self._now_ms(),
        )
        self._pending[request.id] = request
        log.info("Command awaiting approval", approval_id=request.id, command=request.command)
        if on_pending is not None:
            maybe = on_pending(request)
            if inspect.isawaitable(maybe):
                await maybe

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout
        while True:
            wakeup = self._wakeup
            status = self._decide(command, key)
            if status is not None:
                self._pending.pop(request.id, None)
                self._cancelled.pop(request.id, None)
                return ApprovalOutcome(status, request)

            if request.id in self._cancelled:
                reason = self._cancelled.pop(request.id)
                return ApprovalOutcome(CANCELLED, request, reason)

            if abort_event is not None and abort_event.is_set():
                self._pending.pop(request.id, None)
                return ApprovalOutcome(CANCELLED, request, "aborted")

            if request.id not in self._pending:
                return ApprovalOutcome(CANCELLED, request, "no longer pending")

            remaining = deadline - loop.time()
            if remaining <= 0:
                self._pending.pop(request.id, None)
                log.info("Command approval timed out", approval_id=request.id)
                return ApprovalOutcome(TIMED_OUT, request)

            try:
                await asyncio.wait_for(wakeup.wait(), timeout=min(self.poll_interval, remaining))
            except asyncio.TimeoutError:
                pass
