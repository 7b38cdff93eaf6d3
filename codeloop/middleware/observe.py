"""Logging middleware: start, elapsed time and outcome of each model call."""

import time
from typing import AsyncIterator

from codeloop.llm import InvocationRequest, LLMResponse, StreamChunk
from codeloop.logging import get_logger
from codeloop.middleware import InvokeNext, Middleware, StreamNext


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class LoggingMiddleware(Middleware):
    """Log model calls without touching their payloads."""

    def __init__(self, model: str = "", logger=None):
        self.model = model
        self.log = logger or get_logger(__name__)

    async def invoke(self, request: InvocationRequest, call_next: InvokeNext) -> LLMResponse:
        start = time.monotonic()
        self.log.info("Model call started", op="generate", model=self.model, messages=len(request.messages))
        try:
            response = await call_next(request)
        except Exception as e:
            self.log.warning(
                "Model call failed",
                op="generate",
                model=self.model,
                elapsed_ms=_elapsed_ms(start),
                error=str(e),
            )
            raise
        self.log.info(
            "Model call completed",
            op="generate",
            model=self.model,
            elapsed_ms=_elapsed_ms(start),
            usage=response.usage,
        )
        return response

    async def invoke_stream(self, request: InvocationRequest, call_next: StreamNext) -> AsyncIterator[StreamChunk]:
        start = time.monotonic()
        chunks = 0
        self.log.info("Model stream started", op="stream", model=self.model, messages=len(request.messages))
        try:
            async for chunk in call_next(request):
                chunks += 1
                yield chunk
        except Exception as e:
            self.log.warning(
                "Model stream failed",
                op="stream",
                model=self.model,
                elapsed_ms=_elapsed_ms(start),
                chunks=chunks,
                error=str(e),
            )
            raise
        self.log.info(
            "Model stream completed",
            op="stream",
            model=self.model,
            elapsed_ms=_elapsed_ms(start),
            chunks=chunks,
        )
