"""Disk-backed queue for model calls whose retry wait is too long to sleep through."""

import asyncio
import json
import secrets
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from codeloop.logging import get_logger
from codeloop.tools.approval import atomic_write_text

log = get_logger(__name__)

Priority = Literal["high", "normal", "low"]
Status = Literal["pending", "processing", "completed", "failed", "cancelled"]

PRIORITY_ORDER: dict[str, int] = {"high": 0, "normal": 1, "low": 2}
FINISHED: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
DEFAULT_RETRY_INTERVALS_MS: tuple[int, ...] = (
    60_000,
    120_000,
    300_000,
    600_000,
    900_000,
    1_200_000,
    1_500_000,
    1_800_000,
)

# Finished entries older than this are dropped when the queue is loaded.
STALE_FINISHED_MS = 3_600_000


def new_request_id(now_ms: int) -> str:
    """``req_<epoch ms>_<random>``."""
    return f"req_{now_ms}_{secrets.token_hex(5)}"


class QueuedError(BaseModel):
    code: str = "UNKNOWN"
    message: str = ""
    status_code: int | None = None
    timestamp: int = 0


class QueuedRequest(BaseModel):
    """One deferred call; timestamps are epoch ms."""

    id: str
    timestamp: int
    retry_at: int
    attempt_number: int = 0
    priority: Priority = "normal"
    provider: str
    model: str
    operation: Literal["generate", "stream"] = "generate"
    request: dict[str, Any] = Field(default_factory=dict)
    last_error: QueuedError | None = None
    status: Status = "pending"
    result: Any = None


Processor = Callable[[QueuedRequest], Awaitable[Any]]


def _error_record(error: BaseException, now_ms: int) -> QueuedError:
    code = getattr(error, "code", None)
    status = getattr(error, "status_code", None)
    return QueuedError(
        code=str(code) if code else "UNKNOWN",
        message=str(error) or type(error).__name__,
        status_code=int(status) if isinstance(status, int) else None,
        timestamp=now_ms,
    )


class RequestQueue:
    """Queued calls, one JSON file per request id under ``path``.

    Entries are replayed by :meth:`process_ready` once their ``retry_at`` has
    passed, highest priority first. A failed replay is rescheduled on the
    next interval in ``retry_intervals_ms``; when the intervals run out, or
    the entry is older than ``max_retry_duration_seconds``, it is marked
    failed and kept for inspection.
    """

    def __init__(
        self,
        path: str | Path,
        max_size: int = 100,
        retry_intervals_ms: list[int] | tuple[int, ...] = DEFAULT_RETRY_INTERVALS_MS,
        max_retry_duration_seconds: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path).expanduser()
        self.max_size = max(1, int(max_size))
        self.retry_intervals_ms = list(retry_intervals_ms) or list(DEFAULT_RETRY_INTERVALS_MS)
        self.max_retry_duration_ms = max_retry_duration_seconds * 1000
        self._clock = clock
        self._requests: dict[str, QueuedRequest] = {}
        self._processing = False
        self._load()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _file_for(self, request_id: str) -> Path:
        return self.path / f"{request_id}.json"

    def _save(self, entry: QueuedRequest) -> None:
        atomic_write_text(self._file_for(entry.id), entry.model_dump_json(indent=2))

    def _delete_file(self, request_id: str) -> None:
        self._file_for(request_id).unlink(missing_ok=True)

    def _load(self) -> None:
        if not self.path.is_dir():
            return
        now = self._now_ms()
        for file_path in sorted(self.path.glob("*.json")):
            try:
                entry = QueuedRequest.model_validate(json.loads(file_path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                log.warning("Skipping unreadable queued request", path=str(file_path), error=str(e))
                continue
            if entry.status in FINISHED and now - entry.timestamp > STALE_FINISHED_MS:
                file_path.unlink(missing_ok=True)
                continue
            if entry.status == "processing":
                # Interrupted mid-replay by a restart.
                entry.status = "pending"
            self._requests[entry.id] = entry

    def _evict_one(self) -> None:
        """Make room: oldest finished entry first, then the oldest pending one, low priority first."""
        finished = [e for e in self._requests.values() if e.status in FINISHED]
        if finished:
            self.dequeue(min(finished, key=lambda e: e.timestamp).id)
            return
        for priority in ("low", "normal", "high"):
            candidates = [
                e for e in self._requests.values() if e.status == "pending" and e.priority == priority
            ]
            if candidates:
                oldest = min(candidates, key=lambda e: e.timestamp)
                log.warning("Request queue full, dropping oldest entry", request_id=oldest.id, priority=priority)
                self.dequeue(oldest.id)
                return

    def _interval_for(self, attempt: int) -> int:
        if attempt < len(self.retry_intervals_ms):
            return self.retry_intervals_ms[attempt]
        return self.retry_intervals_ms[-1]

    def enqueue(
        self,
        provider: str,
        model: str,
        request: dict[str, Any],
        delay_ms: float | None = None,
        operation: Literal["generate", "stream"] = "generate",
        priority: Priority = "normal",
        attempt_number: int = 0,
        error: BaseException | None = None,
    ) -> QueuedRequest:
        """Persist a call for later replay; returns the stored entry."""
        if len(self._requests) >= self.max_size:
            self._evict_one()
        now = self._now_ms()
        entry = QueuedRequest(
            id=new_request_id(now),
            timestamp=now,
            retry_at=now + int(delay_ms if delay_ms is not None else self._interval_for(attempt_number)),
            attempt_number=attempt_number,
            priority=priority,
            provider=provider,
            model=model,
            operation=operation,
            request=request,
            last_error=_error_record(error, now) if error is not None else None,
        )
        self._requests[entry.id] = entry
        self._save(entry)
        log.info(
            "Queued request for long retry",
            request_id=entry.id,
            provider=provider,
            model=model,
            retry_in_ms=entry.retry_at - now,
        )
        return entry

    def dequeue(self, request_id: str) -> bool:
        removed = self._requests.pop(request_id, None) is not None
        if removed:
            self._delete_file(request_id)
        return removed

    def get(self, request_id: str) -> QueuedRequest | None:
        return self._requests.get(request_id)

    def entries(self, status: Status | None = None, priority: Priority | None = None) -> list[QueuedRequest]:
        return [
            e
            for e in self._requests.values()
            if (status is None or e.status == status) and (priority is None or e.priority == priority)
        ]

    def ready(self) -> list[QueuedRequest]:
        """Pending entries whose retry time has come, in processing order."""
        now = self._now_ms()
        due = [e for e in self._requests.values() if e.status == "pending" and e.retry_at <= now]
        return sorted(due, key=lambda e: (PRIORITY_ORDER[e.priority], e.retry_at))

    def update_status(self, request_id: str, status: Status, result: Any = None) -> None:
        entry = self._requests.get(request_id)
        if entry is None:
            return
        entry.status = status
        if status == "pending":
            entry.retry_at = self._now_ms() + self._interval_for(entry.attempt_number)
        if status == "completed":
            entry.result = result
        self._save(entry)

    def cancel(self, request_id: str) -> bool:
        """Drop a pending entry; anything else is left alone."""
        entry = self._requests.get(request_id)
        if entry is None or entry.status != "pending":
            return False
        return self.dequeue(request_id)

    async def retry(self, request_id: str, processor: Processor) -> bool:
        """Replay a failed entry right away."""
        entry = self._requests.get(request_id)
        if entry is None or entry.status != "failed":
            return False
        entry.attempt_number += 1
        entry.last_error = None
        return await self._run_one(entry, processor, reschedule=False)

    def clear_finished(self) -> int:
        finished = [e.id for e in self._requests.values() if e.status in FINISHED]
        for request_id in finished:
            self.dequeue(request_id)
        return len(finished)

    def clear(self) -> int:
        count = len(self._requests)
        for request_id in list(self._requests):
            self.dequeue(request_id)
        return count

    def stats(self) -> dict[str, Any]:
        entries = list(self._requests.values())
        counts: dict[str, Any] = {s: 0 for s in ("pending", "processing", "completed", "failed", "cancelled")}
        by_priority = {p: 0 for p in PRIORITY_ORDER}
        for entry in entries:
            counts[entry.status] += 1
            by_priority[entry.priority] += 1
        stats: dict[str, Any] = {"total": len(entries), **counts, "by_priority": by_priority}
        pending = [e for e in entries if e.status == "pending"]
        if pending:
            oldest = min(pending, key=lambda e: e.retry_at)
            stats["oldest"] = {
                "id": oldest.id,
                "age_ms": self._now_ms() - oldest.timestamp,
                "retry_at": oldest.retry_at,
            }
        return stats

    async def _run_one(self, entry: QueuedRequest, processor: Processor, reschedule: bool = True) -> bool:
        self.update_status(entry.id, "processing")
        try:
            result = await processor(entry)
        except asyncio.CancelledError:
            self.update_status(entry.id, "pending")
            raise
        except Exception as e:
            entry.last_error = _error_record(e, self._now_ms())
            entry.attempt_number += 1
            exhausted = entry.attempt_number >= len(self.retry_intervals_ms)
            if reschedule and not exhausted:
                self.update_status(entry.id, "pending")
            else:
                self.update_status(entry.id, "failed")
            log.warning(
                "Queued request replay failed",
                request_id=entry.id,
                attempt=entry.attempt_number,
                status=entry.status,
                error=str(e),
            )
            return False
        self.update_status(entry.id, "completed", result=result)
        log.info("Queued request replayed", request_id=entry.id)
        return True

    async def process_ready(self, processor: Processor) -> int:
        """Replay every due entry once; returns how many succeeded."""
        if self._processing:
            return 0
        self._processing = True
        succeeded = 0
        try:
            for entry in self.ready():
                if entry.status != "pending":
                    continue
                if self._now_ms() - entry.timestamp > self.max_retry_duration_ms:
                    entry.last_error = QueuedError(
                        code="MAX_DURATION",
                        message=f"Max retry duration ({int(self.max_retry_duration_ms)}ms) exceeded",
                        timestamp=self._now_ms(),
                    )
                    self.update_status(entry.id, "failed")
                    continue
                if await self._run_one(entry, processor):
                    succeeded += 1
        finally:
            self._processing = False
        return succeeded

    async def run(self, processor: Processor, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Call :meth:`process_ready` every ``interval_seconds`` until ``stop_event`` is set."""
        while not stop_event.is_set():
            await self.process_ready(processor)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
