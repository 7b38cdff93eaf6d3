"""Retry middleware with exponential backoff and retry-after support."""

import asyncio
import math
import random
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

from codeloop.config import RetryConfig
from codeloop.exceptions import (
    CodeloopError,
    LLMAuthenticationError,
    LLMRateLimitError,
    LLMRequestQueuedError,
    LLMRetryableError,
    LLMServerError,
    OperationAbortedError,
)
from codeloop.llm import InvocationRequest, LLMResponse, StreamChunk
from codeloop.logging import get_logger
from codeloop.middleware import InvokeNext, Middleware, StreamNext
from codeloop.middleware.queue import RequestQueue
from codeloop.middleware.ratelimit import RateLimitTracker

log = get_logger(__name__)

_RATE_LIMIT_MESSAGE = re.compile(r"rate limit|rate_limited|rate_limit_exceeded", re.IGNORECASE)
_TRY_AGAIN_IN = re.compile(r"try again in\s*([0-9.]+)\s*s", re.IGNORECASE)

JITTER_RATIO = 0.2


@dataclass
class RetryPolicy:
    """How many times, how long and on which failures to retry."""

    max_retries: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 60000
    backoff_multiplier: float = 2.0
    retryable_status_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )
    network_error_codes: frozenset[str] = field(
        default_factory=lambda: frozenset({"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "EPIPE"})
    )

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            initial_delay_ms=config.initial_delay_ms,
            max_delay_ms=config.max_delay_ms,
            backoff_multiplier=config.backoff_multiplier,
            retryable_status_codes=frozenset(config.retryable_status_codes),
            network_error_codes=frozenset(config.network_error_codes),
        )


def _error_code(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    body = getattr(error, "body", None)
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        inner = body["error"].get("code")
        return str(inner) if inner else None
    return None


def _is_rate_limit_signal(error: BaseException) -> bool:
    code = _error_code(error)
    if code and "rate_limit" in code.lower():
        return True
    return bool(_RATE_LIMIT_MESSAGE.search(str(error)))


def is_retryable_error(error: BaseException, policy: RetryPolicy) -> bool:
    """Classify a failure as transient."""
    if isinstance(error, LLMRetryableError):
        return True
    status = getattr(error, "status_code", None)
    if status and int(status) in policy.retryable_status_codes:
        return True
    if _error_code(error) in policy.network_error_codes:
        return True
    return _is_rate_limit_signal(error)


def _positive_seconds(raw, scale: float = 1.0) -> float | None:
    try:
        seconds = float(raw) / scale
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return seconds


def extract_retry_after(error: BaseException) -> float | None:
    """Provider-supplied wait in seconds, if the failure carries one.

    ``retry-after-ms`` wins over ``retry-after``; fractions are kept.
    """
    headers = getattr(error, "headers", None) or {}
    seconds = _positive_seconds(headers.get("retry-after-ms"), scale=1000)
    if seconds is None:
        seconds = _positive_seconds(headers.get("retry-after") or getattr(error, "retry_after", None))
    if seconds is not None:
        return seconds

    match = _TRY_AGAIN_IN.search(str(error))
    if match:
        return _positive_seconds(match.group(1))
    return None


def compute_delay(attempt: int, policy: RetryPolicy, retry_after: float | None = None) -> float:
    """Delay in milliseconds before retry number ``attempt + 1``."""
    if retry_after:
        return min(retry_after * 1000, policy.max_delay_ms)
    base = policy.initial_delay_ms * (policy.backoff_multiplier ** attempt)
    jitter = base * JITTER_RATIO * (random.random() * 2 - 1)
    return min(base + jitter, policy.max_delay_ms)


def wrap_error(error: BaseException) -> BaseException:
    """Map a raw failure onto the typed error surfaced to callers."""
    if isinstance(error, (LLMRetryableError, LLMAuthenticationError, OperationAbortedError)):
        return error
    status = getattr(error, "status_code", None)
    code = _error_code(error) or ""
    message = str(error) or type(error).__name__

    wrapped: CodeloopError | None = None
    if status == 429 or "rate_limit" in code.lower():
        wrapped = LLMRateLimitError(f"Rate limit exceeded: {message}", retry_after=extract_retry_after(error))
    elif status in (401, 403):
        wrapped = LLMAuthenticationError(message, status_code=status)
    elif status and 500 <= int(status) < 600:
        wrapped = LLMServerError(message, status_code=int(status))

    if wrapped is None:
        return error
    wrapped.__cause__ = error
    return wrapped


async def abortable_sleep(seconds: float, abort_event: asyncio.Event | None = None) -> None:
    """Sleep without blocking the loop; wake early and raise when aborted."""
    if abort_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(abort_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise OperationAbortedError()


class RetryMiddleware(Middleware):
    """Retry transient failures with backoff.

    Streams are retried only while nothing has been delivered downstream;
    once a chunk has gone out, a failure propagates as-is (wrapped).

    With a ``rate_limiter``, each attempt first waits out whatever the
    tracked quota requires, and failures feed the tracker. With a ``queue``,
    a retryable failure whose retry-after exceeds ``policy.max_delay_ms`` is
    handed to the queue and surfaces as :class:`LLMRequestQueuedError`.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        sleep: Callable[[float, asyncio.Event | None], Awaitable[None]] | None = None,
        rate_limiter: RateLimitTracker | None = None,
        queue: RequestQueue | None = None,
        provider: str = "",
        model: str = "",
    ):
        self.policy = policy or RetryPolicy()
        self.on_retry = on_retry
        self._sleep = sleep or abortable_sleep
        self.rate_limiter = rate_limiter
        self.queue = queue
        self.provider = provider
        self.model = model

    @staticmethod
    def _check_abort(request: InvocationRequest) -> None:
        if request.abort_event is not None and request.abort_event.is_set():
            raise OperationAbortedError()

    async def _throttle(self, request: InvocationRequest) -> None:
        if self.rate_limiter is None:
            return
        decision = self.rate_limiter.check(self.provider, self.model)
        if decision.wait_ms <= 0:
            return
        log.info(
            "Holding model call for rate limit",
            provider=self.provider,
            model=self.model,
            wait_ms=round(decision.wait_ms),
            reason=decision.reason,
        )
        await self._sleep(decision.wait_ms / 1000, request.abort_event)

    def _observe_failure(self, error: BaseException) -> None:
        if self.rate_limiter is None:
            return
        headers = getattr(error, "headers", None)
        if headers:
            self.rate_limiter.update_from_headers(self.provider, self.model, headers)
        if getattr(error, "status_code", None) == 429 or _is_rate_limit_signal(error):
            self.rate_limiter.record_rate_limit_error(self.provider, self.model, extract_retry_after(error))

    def _maybe_queue(self, error: BaseException, request: InvocationRequest, operation: str) -> BaseException | None:
        if self.queue is None or isinstance(error, OperationAbortedError):
            return None
        if not is_retryable_error(error, self.policy):
            return None
        retry_after = extract_retry_after(error)
        if retry_after is None or retry_after * 1000 <= self.policy.max_delay_ms:
            return None
        entry = self.queue.enqueue(
            self.provider,
            self.model,
            request.to_dict(),
            delay_ms=retry_after * 1000,
            operation=operation,
            error=error,
        )
        status = getattr(error, "status_code", None)
        return LLMRequestQueuedError(
            entry.id,
            retry_after=retry_after,
            status_code=int(status) if isinstance(status, int) else 429,
        )

    async def _backoff(self, attempt: int, error: BaseException, request: InvocationRequest) -> None:
        delay_ms = compute_delay(attempt, self.policy, extract_retry_after(error))
        log.warning(
            "Retrying model call",
            attempt=attempt + 1,
            max_retries=self.policy.max_retries,
            delay_ms=round(delay_ms),
            error=str(error),
        )
        if self.on_retry is not None:
            self.on_retry(attempt + 1, error, delay_ms)
        await self._sleep(delay_ms / 1000, request.abort_event)

    def _should_retry(self, attempt: int, error: BaseException) -> bool:
        if isinstance(error, OperationAbortedError):
            return False
        return attempt < self.policy.max_retries and is_retryable_error(error, self.policy)

    async def invoke(self, request: InvocationRequest, call_next: InvokeNext) -> LLMResponse:
        attempt = 0
        while True:
            self._check_abort(request)
            await self._throttle(request)
            try:
                return await call_next(request)
            except Exception as e:
                self._observe_failure(e)
                queued = self._maybe_queue(e, request, "generate")
                if queued is not None:
                    raise queued from e
                if not self._should_retry(attempt, e):
                    wrapped = wrap_error(e)
                    if wrapped is e:
                        raise
                    raise wrapped from e
                await self._backoff(attempt, e, request)
                attempt += 1

    async def invoke_stream(self, request: InvocationRequest, call_next: StreamNext) -> AsyncIterator[StreamChunk]:
        attempt = 0
        while True:
            self._check_abort(request)
            await self._throttle(request)
            delivered = False
            try:
                async for chunk in call_next(request):
                    delivered = True
                    yield chunk
                return
            except Exception as e:
                self._observe_failure(e)
                if not delivered:
                    queued = self._maybe_queue(e, request, "stream")
                    if queued is not None:
                        raise queued from e
                if delivered or not self._should_retry(attempt, e):
                    wrapped = wrap_error(e)
                    if wrapped is e:
                        raise
                    raise wrapped from e
                await self._backoff(attempt, e, request)
                attempt += 1
