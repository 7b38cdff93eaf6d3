"""Shared runtime state: provider handles, stores, the approval gate and tools."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from codeloop.agent import Agent
from codeloop.config import Config, get_config
from codeloop.llm import InvocationRequest
from codeloop.llm.resolver import ModelHandle, ProviderConfig, ProviderResolver
from codeloop.logging import configure_logging, get_logger
from codeloop.middleware import MiddlewareChain, build_middleware_chain
from codeloop.middleware.cache import FileCache
from codeloop.middleware.journal import StreamJournalStore
from codeloop.middleware.queue import QueuedRequest, RequestQueue
from codeloop.middleware.ratelimit import RateLimitTracker
from codeloop.tools.approval import ApprovalGate, ApprovalStore
from codeloop.tools.background import BackgroundProcessSupervisor, ProcessTool
from codeloop.tools.registry import ToolRegistry
from codeloop.tools.shell import ShellTool

log = get_logger(__name__)


@dataclass
class RuntimeContext:
    """Long-lived objects shared by every agent run in one process.

    Build it with :meth:`from_config`; close it with :meth:`aclose` so that
    background processes are killed and HTTP clients released.
    """

    config: Config
    resolver: ProviderResolver
    approval_gate: ApprovalGate
    supervisor: BackgroundProcessSupervisor
    tools: ToolRegistry
    journal_store: StreamJournalStore | None = None
    cache: FileCache | None = None
    rate_limiter: RateLimitTracker | None = None
    request_queue: RequestQueue | None = None
    chains: list[MiddlewareChain] = field(default_factory=list)
    _queue_task: asyncio.Task | None = field(default=None, repr=False)
    _queue_stop: asyncio.Event | None = field(default=None, repr=False)

    @classmethod
    def from_config(cls, config: Config | None = None, **resolver_kwargs: Any) -> RuntimeContext:
        cfg = config or get_config()
        configure_logging(cfg.logging)
        journal_store = None
        if cfg.journal.enabled:
            journal_store = StreamJournalStore(
                cfg.journal.path,
                flush_every=cfg.journal.flush_every,
                max_age_seconds=cfg.journal.max_age_seconds,
            )
        cache = None
        if cfg.cache.enabled:
            cache = FileCache(
                cfg.cache.path,
                ttl_seconds=cfg.cache.ttl_seconds,
                max_entries=cfg.cache.max_entries,
            )
        rate_limiter = RateLimitTracker(
            enabled=cfg.rate_limit.enabled,
            throttle_buffer_ms=cfg.rate_limit.throttle_buffer_ms,
        )
        request_queue = None
        if cfg.queue.enabled:
            request_queue = RequestQueue(
                cfg.queue.path,
                max_size=cfg.queue.max_size,
                retry_intervals_ms=cfg.queue.retry_intervals_ms,
                max_retry_duration_seconds=cfg.queue.max_retry_duration_seconds,
            )
        gate = ApprovalGate(
            ApprovalStore(cfg.approval.path),
            yolo=cfg.approval.yolo,
            allow_prefixes=list(cfg.approval.allow_prefixes),
            wait_timeout=cfg.approval.wait_timeout_seconds,
            poll_interval=cfg.approval.poll_interval_seconds,
            allow_once_ttl=cfg.approval.allow_once_ttl_seconds,
        )
        supervisor = BackgroundProcessSupervisor(max_lines=cfg.shell.background_max_lines)
        workspace = cfg.resolved_workspace_path()
        tools = ToolRegistry(workspace)
        tools.register(ShellTool(gate, supervisor, config=cfg.shell, workspace=workspace))
        tools.register(ProcessTool(supervisor))
        log.info("Runtime ready", workspace=str(workspace), tools=tools.list_tools())
        return cls(
            config=cfg,
            resolver=ProviderResolver(**resolver_kwargs),
            approval_gate=gate,
            supervisor=supervisor,
            tools=tools,
            journal_store=journal_store,
            cache=cache,
            rate_limiter=rate_limiter,
            request_queue=request_queue,
        )

    def build_chain(self, handle: ModelHandle) -> MiddlewareChain:
        chain = build_middleware_chain(
            handle,
            config=self.config,
            journal_store=self.journal_store,
            cache=self.cache,
            rate_limiter=self.rate_limiter,
            queue=self.request_queue,
        )
        self.chains.append(chain)
        return chain

    def create_agent(
        self,
        provider_config: ProviderConfig | None = None,
        max_iterations: int | None = None,
        system_prompt: str | None = None,
    ) -> Agent:
        """Agent wired to this runtime's tools, stores and resolver."""
        return Agent(
            tools=self.tools,
            config=self.config,
            resolver=self.resolver,
            provider_config=provider_config or ProviderConfig.from_model_config(self.config.model),
            journal_store=self.journal_store,
            chain_builder=self.build_chain,
            max_iterations=max_iterations,
            system_prompt=system_prompt,
        )

    async def replay_queued(self, entry: QueuedRequest) -> dict[str, Any]:
        """Run a queued call straight against its provider and return the response."""
        handle = self.resolver.resolve(
            ProviderConfig(
                provider=entry.provider,
                model=entry.model,
                timeout=self.config.model.request_timeout,
            )
        )
        request = InvocationRequest.from_dict(entry.request)
        request.stream_id = None
        response = await handle.instance.complete(request)
        return response.to_dict()

    async def process_queued(self) -> int:
        """Replay every due queued request once; returns how many succeeded."""
        if self.request_queue is None:
            return 0
        return await self.request_queue.process_ready(self.replay_queued)

    def start_queue_processor(self, interval_seconds: float | None = None) -> None:
        """Replay due queued requests in the background until :meth:`aclose`."""
        if self.request_queue is None or self._queue_task is not None:
            return
        self._queue_stop = asyncio.Event()
        self._queue_task = asyncio.create_task(
            self.request_queue.run(
                self.replay_queued,
                interval_seconds or self.config.queue.processor_interval_seconds,
                self._queue_stop,
            )
        )

    async def aclose(self) -> None:
        if self._queue_task is not None:
            self._queue_stop.set()
            await self._queue_task
            self._queue_task = None
        await self.supervisor.shutdown()
        await self.resolver.aclose()
        self.chains.clear()
