"""Streaming engine and the per-generation handle.

`StreamingEngine` decides between native and synthetic delivery. Native
streams are forwarded chunk by chunk in arrival order; synthetic streams wait
for the complete result and re-emit it in word-aligned pieces.

`GenerationStream` is what callers hold: an async iterator of `StreamChunk`
plus two futures (`usage`, `evaluation`) that resolve independently of chunk
consumption.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Literal

from .adapters import open_stream, supports_streaming
from .analytics import AnalyticsCollector
from .errors import GatewayError
from .models import (
    BackendRequest,
    EvaluationRecord,
    GenerationRequest,
    GenerationResult,
    StreamChunk,
    ToolCallRecord,
    UsageRecord,
)
from .resilience import AttemptCounter, ResilienceWrapper
from .stream_chunks import split_for_synthetic_stream

LOG = logging.getLogger(__name__)

DeliveryMode = Literal["native", "synthetic"]


class StreamingEngine:
    """Choose and drive native or synthetic delivery for one backend call."""

    def __init__(self, resilience: ResilienceWrapper, *, chunk_size: int) -> None:
        self.resilience = resilience
        self.chunk_size = chunk_size

    @staticmethod
    def select_mode(adapter: object, *, native_allowed: bool, tools_active: bool) -> DeliveryMode:
        """Native whenever the adapter can stream and nothing needs the full response first."""
        if native_allowed and not tools_active and supports_streaming(adapter):
            return "native"
        return "synthetic"

    async def native(
        self,
        backend_id: str,
        adapter: object,
        request: BackendRequest,
        collector: AnalyticsCollector,
        *,
        deadline: float | None,
        timeout: float | None,
        counter: AttemptCounter,
    ) -> AsyncGenerator[str, None]:
        """Yield content text from the adapter's native stream as it arrives."""
        stream = self.resilience.stream(
            backend_id,
            lambda: open_stream(adapter, request),
            deadline=deadline,
            timeout=timeout,
            counter=counter,
        )
        latest_usage: dict[str, Any] | None = None
        try:
            async for chunk in stream:
                collector.set_model(chunk.model)
                if chunk.usage is not None:
                    latest_usage = chunk.usage
                if chunk.content:
                    yield chunk.content
        finally:
            await stream.aclose()
        collector.add_usage(latest_usage)

    def synthetic(self, text: str) -> list[str]:
        """Split a complete response into consumer-sized chunks."""
        return split_for_synthetic_stream(text, self.chunk_size)


@dataclass
class GenerationOutcome:
    """Facts about a finished generation, filled in by the producer."""

    backend_id: str
    model: str | None
    tool_calls: tuple[ToolCallRecord, ...]
    retry_count: int
    streamed: bool
    duration_ms: float


class GenerationStream:
    """Handle for one generation: chunks plus deferred usage and evaluation.

    Iterate it (or `async with` it) to receive chunks; the last chunk has
    `final=True`. Closing the handle early, or abandoning its only iterator,
    aborts the backend stream and resolves `usage` as aborted and `evaluation`
    as None. Keep one iterator for the whole consumption: `aiter(handle)` once,
    then `anext()` on that iterator.
    """

    def __init__(self, request: GenerationRequest) -> None:
        loop = asyncio.get_running_loop()
        self.request = request
        self.usage: asyncio.Future[UsageRecord] = loop.create_future()
        self.evaluation: asyncio.Future[EvaluationRecord | None] = loop.create_future()
        self.outcome: GenerationOutcome | None = None
        self.error: GatewayError | None = None
        self._parts: list[str] = []
        self._chunks: AsyncGenerator[StreamChunk, None] | None = None
        self._evaluation_task: asyncio.Task[None] | None = None
        self._iterators = 0
        self._closing: asyncio.Future[None] | None = None

    def bind(self, producer: AsyncGenerator[StreamChunk, None]) -> None:
        self._chunks = producer

    def record_content(self, text: str) -> None:
        self._parts.append(text)

    @property
    def content(self) -> str:
        """Content delivered so far."""
        return "".join(self._parts)

    def set_evaluation_task(self, task: asyncio.Task[None]) -> None:
        self._evaluation_task = task

    def __aiter__(self) -> AsyncGenerator[StreamChunk, None]:
        if self._chunks is None:
            raise RuntimeError("generation stream is not bound to a producer")
        return self._follow(self._chunks)

    async def _follow(self, chunks: AsyncGenerator[StreamChunk, None]) -> AsyncGenerator[StreamChunk, None]:
        """One consumer's view of the producer.

        The event loop finalizes an abandoned iterator (a `break` out of
        `async for`, or a dropped reference). When the last live iterator goes
        away before the final chunk, the generation is closed.
        """
        self._iterators += 1
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            self._iterators -= 1
            if self._iterators == 0:
                await self.aclose()

    async def aclose(self) -> None:
        """Stop the generation; safe to call more than once and from several tasks."""
        if self._closing is None:
            self._closing = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._closing)

    async def _shutdown(self) -> None:
        if self._chunks is not None:
            await self._chunks.aclose()
        if not self.evaluation.done() and self._evaluation_task is None:
            self.evaluation.set_result(None)

    async def __aenter__(self) -> "GenerationStream":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def result(self) -> GenerationResult:
        """Drain remaining chunks and assemble the complete result."""
        if self.outcome is None and self.error is None and self._chunks is not None:
            async for _ in self._chunks:
                pass
        if self.error is not None:
            raise self.error
        if self.outcome is None:
            raise GatewayError("generation was closed before completion")
        usage = await self.usage
        evaluation = await self.evaluation
        return GenerationResult(
            content=self.content,
            backend_id=self.outcome.backend_id,
            model=self.outcome.model,
            usage=usage,
            duration_ms=self.outcome.duration_ms,
            tool_calls=self.outcome.tool_calls,
            evaluation=evaluation,
            retry_count=self.outcome.retry_count,
            streamed=self.outcome.streamed,
        )
