"""Composable middleware around a single model invocation.

A middleware sees every call twice over: ``invoke`` for one-shot completions
and ``invoke_stream`` for streamed ones. Both receive the request plus the
next callable in the chain. The chain is folded once at construction, with
the first middleware in the list outermost.
"""

from typing import Any, AsyncIterator, Awaitable, Callable

from codeloop.config import Config, get_config
from codeloop.llm import InvocationRequest, LLMProvider, LLMResponse, StreamChunk

InvokeNext = Callable[[InvocationRequest], Awaitable[LLMResponse]]
StreamNext = Callable[[InvocationRequest], AsyncIterator[StreamChunk]]


class Middleware:
    """Base middleware; both hooks delegate unchanged."""

    async def invoke(self, request: InvocationRequest, call_next: InvokeNext) -> LLMResponse:
        return await call_next(request)

    def invoke_stream(self, request: InvocationRequest, call_next: StreamNext) -> AsyncIterator[StreamChunk]:
        return call_next(request)


def _bind_invoke(middleware: Middleware, call_next: InvokeNext) -> InvokeNext:
    async def _call(request: InvocationRequest) -> LLMResponse:
        return await middleware.invoke(request, call_next)

    return _call


def _bind_stream(middleware: Middleware, call_next: StreamNext) -> StreamNext:
    def _call(request: InvocationRequest) -> AsyncIterator[StreamChunk]:
        return middleware.invoke_stream(request, call_next)

    return _call


class MiddlewareChain(LLMProvider):
    """An ``LLMProvider`` whose calls pass through an ordered middleware list."""

    def __init__(self, target: LLMProvider, middlewares: list[Middleware] | None = None):
        self.target = target
        self.provider = target.provider
        self.model = target.model
        self.middlewares = list(middlewares or [])

        invoke: InvokeNext = target.complete
        stream: StreamNext = target.complete_streaming
        for middleware in reversed(self.middlewares):
            invoke = _bind_invoke(middleware, invoke)
            stream = _bind_stream(middleware, stream)
        self._invoke = invoke
        self._stream = stream

    async def complete(self, request: InvocationRequest) -> LLMResponse:
        return await self._invoke(request)

    def complete_streaming(self, request: InvocationRequest) -> AsyncIterator[StreamChunk]:
        return self._stream(request)

    def count_tokens(self, text: str) -> int:
        return self.target.count_tokens(text)

    async def close(self) -> None:
        await self.target.close()

    def find(self, kind: type) -> Any:
        """Return the first middleware of ``kind``, if any."""
        for middleware in self.middlewares:
            if isinstance(middleware, kind):
                return middleware
        return None


def build_middleware_chain(
    handle: Any,
    config: Config | None = None,
    journal_store: Any = None,
    cache: Any = None,
    rate_limiter: Any = None,
    queue: Any = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    on_cache_hit: Callable[[str], None] | None = None,
    on_cache_miss: Callable[[str], None] | None = None,
    logging: bool | None = None,
) -> MiddlewareChain:
    """Wrap a model handle (or bare provider) in the default middleware stack.

    Order, outermost first: resumable stream, logging, cache, retry.
    A ``rate_limiter`` is also attached to HTTP providers so that quota
    headers on successful responses are tracked.
    """
    from codeloop.middleware.cache import CacheMiddleware, FileCache
    from codeloop.middleware.journal import ResumableStreamMiddleware
    from codeloop.middleware.observe import LoggingMiddleware
    from codeloop.middleware.retry import RetryMiddleware, RetryPolicy

    cfg = config or get_config()
    target: LLMProvider = getattr(handle, "instance", handle)

    middlewares: list[Middleware] = []
    if journal_store is not None:
        middlewares.append(ResumableStreamMiddleware(journal_store))
    if logging if logging is not None else cfg.agent.middleware_logging:
        middlewares.append(LoggingMiddleware(model=target.model))
    if cache is None and cfg.cache.enabled:
        cache = FileCache(
            path=cfg.cache.path,
            ttl_seconds=cfg.cache.ttl_seconds,
            max_entries=cfg.cache.max_entries,
        )
    if cache is not None:
        middlewares.append(
            CacheMiddleware(
                cache,
                model=target.model,
                on_hit=on_cache_hit,
                on_miss=on_cache_miss,
                replay_delay_ms=cfg.cache.replay_chunk_delay_ms,
            )
        )
    if rate_limiter is not None and hasattr(target, "rate_limit_tracker"):
        target.rate_limit_tracker = rate_limiter
    middlewares.append(
        RetryMiddleware(
            RetryPolicy.from_config(cfg.retry),
            on_retry=on_retry,
            rate_limiter=rate_limiter,
            queue=queue,
            provider=target.provider,
            model=target.model,
        )
    )
    return MiddlewareChain(target, middlewares)


__all__ = [
    "InvokeNext",
    "Middleware",
    "MiddlewareChain",
    "StreamNext",
    "build_middleware_chain",
]
