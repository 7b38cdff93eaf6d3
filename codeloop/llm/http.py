"""Shared HTTP plumbing for streamed chat-style provider APIs."""

import json
from abc import abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from codeloop.exceptions import LLMAPIError, LLMTransportError
from codeloop.llm import (
    InvocationRequest,
    LLMProvider,
    LLMResponse,
    StreamChunk,
    ToolDefinition,
    collect_response,
)
from codeloop.logging import get_logger

log = get_logger(__name__)


def transport_error_code(error: httpx.TransportError) -> str | None:
    """Map an httpx transport failure onto the errno-style code used for retry decisions."""
    if isinstance(error, httpx.TimeoutException):
        return "ETIMEDOUT"
    if isinstance(error, httpx.ConnectError):
        text = str(error).lower()
        if "name or service not known" in text or "nodename nor servname" in text:
            return "ENOTFOUND"
        return "ECONNREFUSED"
    if isinstance(error, (httpx.RemoteProtocolError, httpx.ReadError)):
        return "ECONNRESET"
    if isinstance(error, httpx.WriteError):
        return "EPIPE"
    return None


def _error_code_from_body(body: Any) -> str | None:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            code = err.get("code") or err.get("type")
            return str(code) if code else None
    return None


class HTTPProvider(LLMProvider):
    """Base class for providers speaking a JSON-over-SSE API."""

    endpoint: str = ""
    rate_limit_tracker: Any = None

    def __init__(
        self,
        provider: str,
        model: str,
        base_url: str,
        api_key: str | None = None,
        headers: dict[str, str] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 16384,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.extra_headers = dict(headers or {})
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update(self.extra_headers)
        return headers

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to function-calling declarations."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    @abstractmethod
    def _build_body(self, request: InvocationRequest) -> dict[str, Any]:
        pass

    @abstractmethod
    def _parse_events(self, events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        pass

    @asynccontextmanager
    async def _open_stream(self, body: dict[str, Any]):
        url = f"{self.base_url}{self.endpoint}"
        try:
            log.debug("Opening provider stream", provider=self.provider, model=self.model, url=url)
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    raw = (await response.aread()).decode("utf-8", errors="replace")
                    try:
                        parsed: Any = json.loads(raw)
                    except json.JSONDecodeError:
                        parsed = raw
                    raise LLMAPIError(
                        f"{self.provider} API error {response.status_code}: {raw[:500]}",
                        status_code=response.status_code,
                        headers=dict(response.headers),
                        code=_error_code_from_body(parsed),
                        body=parsed,
                    )
                if self.rate_limit_tracker is not None:
                    self.rate_limit_tracker.update_from_headers(self.provider, self.model, response.headers)
                yield response
        except httpx.TransportError as e:
            raise LLMTransportError(
                f"{self.provider} transport error: {e}",
                code=transport_error_code(e),
            ) from e

    async def _iter_sse(self, response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded JSON payloads from ``data:`` lines."""
        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if not data:
                continue
            if data == "[DONE]":
                break
            try:
                yield json.loads(data)
            except json.JSONDecodeError:
                log.debug("Skipping undecodable stream line", provider=self.provider,line=data[:200])
                continue

    async def complete_streaming(self, request: InvocationRequest) -> AsyncIterator[StreamChunk]:
        """Stream a completion as provider-neutral chunks."""
        body = self._build_body(request)
        async with self._open_stream(body) as response:
            async for chunk in self._parse_events(self._iter_sse(response)):
                yield chunk

    async def complete(self, request: InvocationRequest) -> LLMResponse:
        """Generate a completion by draining the stream."""
        chunks = [chunk async for chunk in self.complete_streaming(request)]
        return collect_response(chunks, model=self.model)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
