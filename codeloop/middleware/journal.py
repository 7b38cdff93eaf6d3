"""Resumable streams: journal every chunk so a stream can be replayed later."""

import asyncio
import hashlib
import json
import secrets
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from codeloop.exceptions import OperationAbortedError
from codeloop.llm import InvocationRequest, StreamChunk
from codeloop.logging import get_logger
from codeloop.middleware import Middleware, StreamNext

log = get_logger(__name__)


def new_stream_id() -> str:
    """``stream_<epoch ms>_<random>``."""
    return f"stream_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


@dataclass
class StreamJournal:
    id: str
    chunks: list[dict[str, Any]] = field(default_factory=list)
    completed: bool = False
    error: str | None = None
    aborted: bool = False
    timestamp: int = 0
    chunk_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StreamJournal":
        chunks = data.get("chunks")
        return cls(
            id=str(data.get("id", "")),
            chunks=list(chunks) if isinstance(chunks, list) else [],
            completed=bool(data.get("completed", False)),
            error=data.get("error"),
            aborted=bool(data.get("aborted", False)),
            timestamp=int(data.get("timestamp", 0) or 0),
            chunk_count=int(data.get("chunk_count", 0) or 0),
        )


class StreamJournalStore:
    """In-memory journals flushed to one JSON file per stream id.

    A journal is flushed every ``flush_every`` chunks and unconditionally on
    completion, error or abort. Journals untouched for ``max_age_seconds``
    are deleted, finished or not.
    """

    def __init__(
        self,
        path: str | Path,
        flush_every: int = 50,
        max_age_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path).expanduser()
        self.flush_every = max(1, int(flush_every))
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._journals: dict[str, StreamJournal] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _file_for(self, stream_id: str) -> Path:
        digest = hashlib.sha256(stream_id.encode("utf-8")).hexdigest()[:32]
        return self.path / f"{digest}.json"

    def _expired(self, journal: StreamJournal) -> bool:
        return self._now_ms() - journal.timestamp > self.max_age_seconds * 1000

    def _flush(self, journal: StreamJournal) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        self._file_for(journal.id).write_text(json.dumps(journal.to_dict()), encoding="utf-8")

    def _load(self, stream_id: str) -> StreamJournal | None:
        file_path = self._file_for(stream_id)
        if not file_path.exists():
            return None
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.debug("Unreadable stream journal", path=str(file_path), error=str(e))
            return None
        if not isinstance(data, dict):
            return None
        return StreamJournal.from_dict(data)

    def delete(self, stream_id: str) -> None:
        self._journals.pop(stream_id, None)
        self._file_for(stream_id).unlink(missing_ok=True)

    def open(self, stream_id: str) -> StreamJournal:
        journal = StreamJournal(id=stream_id, timestamp=self._now_ms())
        self._journals[stream_id] = journal
        self._flush(journal)
        self.prune()
        return journal

    def get(self, stream_id: str) -> StreamJournal | None:
        journal = self._journals.get(stream_id)
        if journal is None:
            journal = self._load(stream_id)
            if journal is not None:
                self._journals[stream_id] = journal
        if journal is not None and self._expired(journal):
            self.delete(stream_id)
            return None
        return journal

    def append(self, stream_id: str, chunk: dict[str, Any]) -> None:
        journal = self.get(stream_id)
        if journal is None:
            return
        journal.chunks.append(chunk)
        journal.chunk_count = len(journal.chunks)
        journal.timestamp = self._now_ms()
        if journal.chunk_count % self.flush_every == 0:
            self._flush(journal)

    def _finish(self, stream_id: str, **changes: Any) -> None:
        journal = self.get(stream_id)
        if journal is None:
            return
        for name, value in changes.items():
            setattr(journal, name, value)
        journal.timestamp = self._now_ms()
        self._flush(journal)

    def complete(self, stream_id: str) -> None:
        self._finish(stream_id, completed=True)

    def fail(self, stream_id: str, error: str) -> None:
        self._finish(stream_id, error=error)

    def abort(self, stream_id: str) -> None:
        self._finish(stream_id, aborted=True)

    def prune(self) -> int:
        """Delete expired journals from memory and disk."""
        removed = 0
        for stream_id, journal in list(self._journals.items()):
            if self._expired(journal):
                self.delete(stream_id)
                removed += 1
        if self.path.exists():
            live = {self._file_for(stream_id).name for stream_id in self._journals}
            cutoff = self._clock() - self.max_age_seconds
            for file_path in self.path.glob("*.json"):
                if file_path.name not in live and file_path.stat().st_mtime < cutoff:
                    file_path.unlink(missing_ok=True)
                    removed += 1
        return removed

    async def replay(self, stream_id: str) -> AsyncIterator[StreamChunk]:
        """Yield every journaled chunk of a still-valid stream, in arrival order."""
        journal = self.get(stream_id)
        if journal is None:
            return
        for raw in list(journal.chunks):
            yield StreamChunk.from_dict(raw)


class ResumableStreamMiddleware(Middleware):
    """Journal streamed chunks under the request's stream id."""

    def __init__(self, store: StreamJournalStore):
        self.store = store

    async def invoke_stream(self, request: InvocationRequest, call_next: StreamNext) -> AsyncIterator[StreamChunk]:
        stream_id = request.stream_id or new_stream_id()
        request.stream_id = stream_id
        self.store.open(stream_id)
        log.debug("Stream journal opened", stream_id=stream_id)
        try:
            async for chunk in call_next(request):
                self.store.append(stream_id, chunk.to_dict())
                yield chunk
        except (GeneratorExit, asyncio.CancelledError, OperationAbortedError):
            self.store.abort(stream_id)
            raise
        except Exception as e:
            self.store.fail(stream_id, str(e))
            raise
        self.store.complete(stream_id)

    def resume(self, stream_id: str) -> AsyncIterator[StreamChunk]:
        return self.store.replay(stream_id)
