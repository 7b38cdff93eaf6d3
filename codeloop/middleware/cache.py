"""File-backed response cache and its middleware."""

import asyncio
import hashlib
import json
import time
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from codeloop.llm import InvocationRequest, LLMResponse, StreamChunk
from codeloop.logging import get_logger
from codeloop.middleware import InvokeNext, Middleware, StreamNext

log = get_logger(__name__)


def _file_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:32]


class FileCache:
    """One JSON file per key, ``{key, value, timestamp}``, timestamp in epoch ms.

    Entries expire ``ttl_seconds`` after they were written (checked on read).
    Writing a new key when the directory holds ``max_entries`` files deletes
    the oldest files by mtime first.
    """

    def __init__(
        self,
        path: str | Path,
        ttl_seconds: float = 3600.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path).expanduser()
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, int(max_entries))
        self._clock = clock

    def _file_for(self, key: str) -> Path:
        return self.path / f"{_file_hash(key)}.json"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get(self, key: str) -> Any | None:
        file_path = self._file_for(key)
        if not file_path.exists():
            return None
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.debug("Unreadable cache entry", path=str(file_path), error=str(e))
            return None
        if self._now_ms() - int(data.get("timestamp", 0)) > self.ttl_seconds * 1000:
            file_path.unlink(missing_ok=True)
            return None
        return data.get("value")

    def set(self, key: str, value: Any) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        file_path = self._file_for(key)
        if not file_path.exists():
            self._prune()
        payload = {"key": key, "value": value, "timestamp": self._now_ms()}
        file_path.write_text(json.dumps(payload), encoding="utf-8")

    def _prune(self) -> None:
        files = sorted(self.path.glob("*.json"), key=lambda p: p.stat().st_mtime)
        while len(files) >= self.max_entries:
            oldest = files.pop(0)
            oldest.unlink(missing_ok=True)
            log.debug("Evicted cache entry", path=str(oldest))

    def clear(self) -> int:
        """Delete every entry; returns how many files were removed."""
        if not self.path.exists():
            return 0
        removed = 0
        for file_path in self.path.glob("*.json"):
            file_path.unlink(missing_ok=True)
            removed += 1
        return removed

    def __len__(self) -> int:
        if not self.path.exists():
            return 0
        return sum(1 for _ in self.path.glob("*.json"))


def cache_key(request: InvocationRequest, model: str, op: str) -> str:
    """Deterministic key over the canonical projection of a request."""
    canonical = {
        "op": op,
        "model": model,
        "system": request.system,
        "messages": [
            {
                "role": m.role,
                "content": m.content,
                "tool_call_id": m.tool_call_id,
                "tool_name": m.tool_name,
                "tool_calls": [
                    {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                    for tc in m.tool_calls
                ],
            }
            for m in request.messages
        ],
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
        "tool_choice": request.tool_choice,
        "tools": [t.name for t in request.tools],
        "provider_options": request.provider_options,
    }
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{model}:{op}:{digest}"


class CacheMiddleware(Middleware):
    """Serve identical requests from the file cache."""

    def __init__(
        self,
        cache: FileCache,
        model: str = "",
        on_hit: Callable[[str], None] | None = None,
        on_miss: Callable[[str], None] | None = None,
        replay_delay_ms: float = 5,
    ):
        self.cache = cache
        self.model = model
        self.on_hit = on_hit
        self.on_miss = on_miss
        self.replay_delay_ms = replay_delay_ms

    def _hit(self, key: str) -> None:
        log.debug("Cache hit", key=key)
        if self.on_hit is not None:
            self.on_hit(key)

    def _miss(self, key: str) -> None:
        log.debug("Cache miss", key=key)
        if self.on_miss is not None:
            self.on_miss(key)

    async def invoke(self, request: InvocationRequest, call_next: InvokeNext) -> LLMResponse:
        key = cache_key(request, self.model, "generate")
        cached = self.cache.get(key)
        if cached is not None:
            self._hit(key)
            return LLMResponse.from_dict(cached)

        self._miss(key)
        response = await call_next(request)
        self.cache.set(key, response.to_dict())
        return response

    async def invoke_stream(self, request: InvocationRequest, call_next: StreamNext) -> AsyncIterator[StreamChunk]:
        key = cache_key(request, self.model, "stream")
        cached = self.cache.get(key)
        if cached is not None:
            self._hit(key)
            for index, raw in enumerate(cached.get("chunks") or []):
                if index and self.replay_delay_ms:
                    await asyncio.sleep(self.replay_delay_ms / 1000)
                yield StreamChunk.from_dict(raw)
            return

        self._miss(key)
        observed: list[dict[str, Any]] = []
        errored = False
        async for chunk in call_next(request):
            observed.append(chunk.to_dict())
            errored = errored or chunk.type == "error"
            yield chunk
        if not errored:
            self.cache.set(key, {"chunks": observed})

    def clear(self) -> int:
        return self.cache.clear()
