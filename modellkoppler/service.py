"""Generation service: backend selection, tool loop, streaming and analytics."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncGenerator

from .adapters import BackendAdapter
from .analytics import AnalyticsCollector
from .config import EvaluationConfig, KopplerConfig
from .errors import ConfigurationError, GatewayError, ToolExecutionError
from .evaluation import EvaluationHook
from .models import (
    AUTO_BACKEND,
    BackendRequest,
    BackendResult,
    GenerationRequest,
    GenerationResult,
    StreamChunk,
    ToolCallRecord,
)
from .resilience import AttemptCounter, ResilienceWrapper
from .streaming import GenerationOutcome, GenerationStream, StreamingEngine
from .tool_orchestrator import ToolOrchestrator
from .tool_registry import ToolRegistry
from .upstream import build_adapter

LOG = logging.getLogger(__name__)


def _assistant_tool_message(result: BackendResult) -> dict[str, Any]:
    """Echo the backend's tool request into the conversation for the next round."""
    return {
        "role": "assistant",
        "content": result.content or None,
        "tool_calls": [
            {
                "id": call.call_id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in result.tool_calls
        ],
    }


class GenerationService:
    """Runtime container that turns canonical requests into canonical results."""

    def __init__(
        self,
        cfg: KopplerConfig,
        *,
        adapters: dict[str, BackendAdapter] | None = None,
        registry: ToolRegistry | None = None,
        resilience: ResilienceWrapper | None = None,
    ) -> None:
        """Initialize service with config-bound adapters; injected adapters win."""
        self.cfg = cfg
        self.registry = registry or ToolRegistry()
        self.tools = ToolOrchestrator(
            self.registry,
            default_timeout_seconds=float(cfg.tool_call_timeout_seconds or 60.0),
            max_concurrency=int(cfg.max_tool_concurrency or 4),
        )
        self.resilience = resilience or ResilienceWrapper(cfg)
        self.engine = StreamingEngine(self.resilience, chunk_size=int(cfg.synthetic_chunk_size or 24))
        self.evaluator = EvaluationHook(cfg.evaluation or EvaluationConfig(), self.resilience)

        injected = dict(adapters or {})
        self.adapters: dict[str, BackendAdapter] = {}
        for backend in cfg.backends:
            if backend.backend_id in injected:
                continue
            if backend.kind == "external":
                raise ConfigurationError("external backend has no adapter object", backend_id=backend.backend_id)
            self.adapters[backend.backend_id] = build_adapter(backend)
        self.adapters.update(injected)
        self._background: set[asyncio.Task[None]] = set()

    async def close(self) -> None:
        """Cancel pending evaluations and close adapters."""
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for adapter in self.adapters.values():
            try:
                await adapter.close()
            except Exception as exc:
                LOG.warning("adapter close failed backend=%s error=%s", getattr(adapter, "backend_id", "?"), exc)

    def _candidates(self, request: GenerationRequest) -> list[str]:
        """Backend ids to try, in order."""
        if request.backend != AUTO_BACKEND:
            if request.backend not in self.adapters:
                raise ConfigurationError(f"unknown backend '{request.backend}'", backend_id=request.backend)
            return [request.backend]

        ordered: list[str] = []
        if self.cfg.default_backend and self.cfg.default_backend in self.adapters:
            ordered.append(self.cfg.default_backend)
        ordered.extend(b.backend_id for b in self.cfg.backends if b.backend_id in self.adapters)
        ordered.extend(sorted(self.adapters))
        unique = list(dict.fromkeys(ordered))
        if not unique:
            raise ConfigurationError("no backends configured")
        available = [backend_id for backend_id in unique if self.resilience.is_available(backend_id)]
        return available + [backend_id for backend_id in unique if backend_id not in available]

    def _backend_request(self, request: GenerationRequest, backend_id: str, tools_active: bool) -> BackendRequest:
        """Translate the canonical request into what adapters receive."""
        backend_cfg = self.cfg.backend(backend_id)
        messages: list[dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})
        return BackendRequest(
            messages=messages,
            model=request.model or (backend_cfg.model if backend_cfg else None),
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            tools=self.registry.function_definitions() if tools_active else [],
            context=dict(request.context),
        )

    def _timeout_for(self, backend_id: str) -> float | None:
        backend_cfg = self.cfg.backend(backend_id)
        return backend_cfg.timeout_seconds if backend_cfg else None

    async def _run_tool_loop(
        self,
        backend_id: str,
        adapter: BackendAdapter,
        backend_request: BackendRequest,
        request: GenerationRequest,
        collector: AnalyticsCollector,
        *,
        tools_active: bool,
        deadline: float | None,
    ) -> tuple[BackendResult, list[ToolCallRecord], int]:
        """Call the backend until it stops requesting tools; return result, records, retries."""
        messages = list(backend_request.messages)
        records: list[ToolCallRecord] = []
        retries = 0
        for round_number in range(max(1, int(self.cfg.max_tool_loops or 8))):
            round_request = BackendRequest(
                messages=list(messages),
                model=backend_request.model,
                temperature=backend_request.temperature,
                max_tokens=backend_request.max_tokens,
                tools=backend_request.tools,
                context=backend_request.context,
            )
            result, attempts = await self.resilience.call(
                backend_id,
                lambda: adapter.generate(round_request),
                deadline=deadline,
                timeout=self._timeout_for(backend_id),
            )
            retries += attempts - 1
            collector.add_usage(result.usage)
            collector.set_model(result.model)
            if not result.tool_calls or not tools_active:
                return result, records, retries

            LOG.info(
                "backend requested tools backend=%s round=%s tools=%s",
                backend_id,
                round_number + 1,
                ", ".join(call.name for call in result.tool_calls),
            )
            messages.append(_assistant_tool_message(result))
            try:
                outcomes, tool_messages = await self.tools.execute_calls(
                    result.tool_calls,
                    context=dict(request.context),
                    mandatory=request.mandatory_tools,
                )
            except ToolExecutionError as exc:
                exc.records = records + exc.records
                exc.backend_id = backend_id
                raise
            records.extend(outcome.record for outcome in outcomes)
            messages.extend(tool_messages)

        raise ToolExecutionError("maximum tool loop iterations reached", records=records)

    async def _evaluate_into(self, handle: GenerationStream, backend_id: str) -> None:
        """Resolve the handle's evaluation future; never raises."""
        record = None
        try:
            evaluator_id = self.cfg.evaluation.backend_id if self.cfg.evaluation else None
            evaluator_id = evaluator_id or backend_id
            adapter = self.adapters.get(evaluator_id)
            if adapter is None:
                LOG.warning("evaluation omitted, evaluator backend unknown backend=%s", evaluator_id)
                return
            record = await self.evaluator.evaluate(
                adapter=adapter,
                backend_id=evaluator_id,
                prompt=handle.request.prompt,
                content=handle.content,
                criteria=handle.request.evaluation_criteria,
                timeout=self._timeout_for(evaluator_id),
            )
        finally:
            if not handle.evaluation.done():
                handle.evaluation.set_result(record)

    def _wants_evaluation(self, request: GenerationRequest) -> bool:
        return request.evaluate or bool(self.cfg.evaluation and self.cfg.evaluation.enabled)

    async def _produce(
        self,
        handle: GenerationStream,
        *,
        native_allowed: bool,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Drive one generation and yield its ordered chunks."""
        request = handle.request
        started = time.monotonic()
        deadline = request.deadline_at(started)
        tools_active = request.enable_tools and len(self.registry) > 0
        collector: AnalyticsCollector | None = None
        evaluation_scheduled = False
        try:
            try:
                candidates = self._candidates(request)
            except GatewayError as exc:
                handle.error = exc
                raise

            last_error: GatewayError | None = None
            for backend_id in candidates:
                adapter = self.adapters[backend_id]
                backend_request = self._backend_request(request, backend_id, tools_active)
                collector = AnalyticsCollector(
                    backend_id=backend_id,
                    backend_cfg=self.cfg.backend(backend_id),
                    model=backend_request.model,
                    future=handle.usage,
                )
                mode = self.engine.select_mode(adapter, native_allowed=native_allowed, tools_active=tools_active)
                LOG.debug("generation start backend=%s mode=%s", backend_id, mode)
                index = 0
                records: list[ToolCallRecord] = []
                try:
                    if mode == "native":
                        counter = AttemptCounter()
                        pieces = self.engine.native(
                            backend_id,
                            adapter,
                            backend_request,
                            collector,
                            deadline=deadline,
                            timeout=self._timeout_for(backend_id),
                            counter=counter,
                        )
                        try:
                            async for text in pieces:
                                handle.record_content(text)
                                yield StreamChunk(index=index, content=text)
                                index += 1
                        finally:
                            await pieces.aclose()
                        retries = max(0, counter.attempts - 1)
                    else:
                        result, records, retries = await self._run_tool_loop(
                            backend_id,
                            adapter,
                            backend_request,
                            request,
                            collector,
                            tools_active=tools_active,
                            deadline=deadline,
                        )
                        for text in self.engine.synthetic(result.content):
                            handle.record_content(text)
                            yield StreamChunk(index=index, content=text)
                            index += 1
                except GatewayError as exc:
                    fall_over = (
                        request.backend == AUTO_BACKEND
                        and index == 0
                        and not isinstance(exc, ToolExecutionError)
                    )
                    if not fall_over:
                        handle.error = exc
                        raise
                    LOG.warning("backend failed, trying next candidate backend=%s error=%s", backend_id, exc)
                    last_error = exc
                    continue

                collector.complete()
                handle.outcome = GenerationOutcome(
                    backend_id=backend_id,
                    model=collector.model,
                    tool_calls=tuple(records),
                    retry_count=retries,
                    streamed=mode == "native",
                    duration_ms=(time.monotonic() - started) * 1000.0,
                )
                LOG.info(
                    "generation done backend=%s mode=%s chunks=%s retries=%s elapsed=%.3fs",
                    backend_id,
                    mode,
                    index,
                    retries,
                    time.monotonic() - started,
                )
                if self._wants_evaluation(request):
                    task = asyncio.create_task(self._evaluate_into(handle, backend_id))
                    self._background.add(task)
                    task.add_done_callback(self._background.discard)
                    handle.set_evaluation_task(task)
                    evaluation_scheduled = True
                yield StreamChunk(index=index, content="", final=True)
                return

            handle.error = last_error or ConfigurationError("no backend candidates")
            raise handle.error
        finally:
            if not handle.usage.done():
                if collector is None:
                    collector = AnalyticsCollector(
                        backend_id=request.backend,
                        backend_cfg=self.cfg.backend(request.backend),
                        future=handle.usage,
                    )
                collector.abort()
            if not evaluation_scheduled and not handle.evaluation.done():
                handle.evaluation.set_result(None)

    def stream(self, request: GenerationRequest) -> GenerationStream:
        """Start a generation and return its handle; must be called inside a running loop."""
        handle = GenerationStream(request)
        handle.bind(self._produce(handle, native_allowed=True))
        return handle

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run a generation to completion and return the canonical result."""
        handle = GenerationStream(request)
        handle.bind(self._produce(handle, native_allowed=False))
        async with handle:
            return await handle.result()

    def health(self) -> dict[str, Any]:
        """Per-backend circuit and limiter view plus registered tools."""
        circuits = self.resilience.snapshot()
        backends = []
        degraded = False
        for backend_id in sorted(self.adapters):
            state = circuits.get(backend_id) or {"state": "closed", "consecutive_failures": 0}
            ok = state["state"] == "closed"
            degraded = degraded or not ok
            backends.append({"backend_id": backend_id, "ok": ok, **state})
        return {
            "ok": not degraded,
            "degraded": degraded,
            "backends": backends,
            "tools": self.registry.names(),
        }
