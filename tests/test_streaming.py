import asyncio
import time

import pytest

from modellkoppler.adapters import BackendAdapter
from modellkoppler.config import KopplerConfig
from modellkoppler.errors import TimeoutError as BackendTimeoutError, TransientNetworkError
from modellkoppler.models import BackendChunk, BackendRequest, BackendResult, GenerationRequest
from modellkoppler.service import GenerationService
from modellkoppler.stream_chunks import split_for_synthetic_stream

_USAGE = {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}


def _make_cfg(**overrides: object) -> KopplerConfig:
    raw = {
        "service_base_url": "http://127.0.0.1:10001",
        "default_backend": "primary",
        "backends": [{"backend_id": "primary", "kind": "external", "model": "stub-model"}],
        "retry": {"max_attempts": 2, "base_delay_ms": 1},
        "synthetic_chunk_size": 8,
    }
    raw.update(overrides)
    return KopplerConfig.model_validate(raw)


class _NativeAdapter(BackendAdapter):
    """Streams the first piece, then waits for `release` before the rest."""

    backend_id = "primary"

    def __init__(self, pieces: list[str]) -> None:
        self.pieces = pieces
        self.release = asyncio.Event()
        self.finished = False
        self.closed = False

    async def generate(self, request: BackendRequest) -> BackendResult:
        return BackendResult(content="".join(self.pieces), model="stub-model", usage=dict(_USAGE))

    async def stream(self, request: BackendRequest):
        try:
            yield BackendChunk(content=self.pieces[0], model="stub-model")
            await self.release.wait()
            for piece in self.pieces[1:]:
                yield BackendChunk(content=piece)
            yield BackendChunk(usage=dict(_USAGE), finish_reason="stop")
            self.finished = True
        finally:
            self.closed = True


class _CompleteOnlyAdapter(BackendAdapter):
    backend_id = "primary"

    def __init__(self, content: str) -> None:
        self.content = content
        self.calls = 0

    async def generate(self, request: BackendRequest) -> BackendResult:
        self.calls += 1
        return BackendResult(content=self.content, model="stub-model", usage=dict(_USAGE))


def test_native_stream_delivers_first_chunk_before_response_is_complete() -> None:
    adapter = _NativeAdapter(["Hello ", "streaming ", "world"])

    async def scenario():
        service = GenerationService(_make_cfg(), adapters={"primary": adapter})
        handle = service.stream(GenerationRequest(prompt="hi"))
        chunks = aiter(handle)
        first = await asyncio.wait_for(anext(chunks), timeout=1.0)

        assert first.index == 0
        assert first.content == "Hello "
        assert adapter.finished is False

        adapter.release.set()
        rest = [chunk async for chunk in chunks]
        result = await handle.result()
        return [first, *rest], result

    chunks, result = asyncio.run(scenario())

    assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
    assert [chunk.final for chunk in chunks].count(True) == 1
    assert chunks[-1].final is True
    assert chunks[-1].content == ""
    assert result.content == "Hello streaming world"
    assert result.streamed is True
    assert result.usage.input_tokens == 3
    assert result.usage.output_tokens == 4
    assert result.usage.total_tokens == 7
    assert result.usage.complete is True
    assert result.evaluation is None


def test_adapter_without_stream_falls_back_to_synthetic_chunks() -> None:
    text = "A complete answer delivered in several synthetic pieces."
    adapter = _CompleteOnlyAdapter(text)

    async def scenario():
        service = GenerationService(_make_cfg(), adapters={"primary": adapter})
        handle = service.stream(GenerationRequest(prompt="hi"))
        chunks = [chunk async for chunk in handle]
        return chunks, await handle.result()

    chunks, result = asyncio.run(scenario())

    body = [chunk for chunk in chunks if not chunk.final]
    assert len(body) > 1
    assert "".join(chunk.content for chunk in body) == text
    assert [chunk.final for chunk in chunks].count(True) == 1
    assert result.streamed is False
    assert adapter.calls == 1


def test_closing_stream_early_aborts_backend_and_resolves_usage_as_aborted() -> None:
    adapter = _NativeAdapter(["partial ", "never sent"])

    async def scenario():
        service = GenerationService(_make_cfg(), adapters={"primary": adapter})
        handle = service.stream(GenerationRequest(prompt="hi", evaluate=True))
        first = await asyncio.wait_for(anext(aiter(handle)), timeout=1.0)
        await handle.aclose()
        usage = await asyncio.wait_for(handle.usage, timeout=1.0)
        evaluation = await asyncio.wait_for(handle.evaluation, timeout=1.0)
        return first, usage, evaluation

    first, usage, evaluation = asyncio.run(scenario())

    assert first.content == "partial "
    assert adapter.closed is True
    assert adapter.finished is False
    assert usage.aborted is True
    assert usage.complete is False
    assert usage.total_tokens == usage.input_tokens + usage.output_tokens
    assert evaluation is None


def test_breaking_out_of_iteration_closes_backend_and_resolves_usage() -> None:
    adapter = _NativeAdapter(["partial ", "never sent"])

    async def scenario():
        service = GenerationService(_make_cfg(), adapters={"primary": adapter})
        handle = service.stream(GenerationRequest(prompt="hi"))
        received = []
        async for chunk in handle:
            received.append(chunk)
            break
        usage = await asyncio.wait_for(asyncio.shield(handle.usage), timeout=1.0)
        evaluation = await asyncio.wait_for(asyncio.shield(handle.evaluation), timeout=1.0)
        return received, usage, evaluation

    received, usage, evaluation = asyncio.run(scenario())

    assert [chunk.content for chunk in received] == ["partial "]
    assert adapter.closed is True
    assert adapter.finished is False
    assert usage.aborted is True
    assert evaluation is None


@pytest.mark.parametrize(
    ("timeout_seconds", "deadline_seconds"),
    [(0.2, None), (30.0, 0.3)],
)
def test_native_stream_stalling_after_first_chunk_times_out(
    timeout_seconds: float,
    deadline_seconds: float | None,
) -> None:
    adapter = _NativeAdapter(["first ", "never sent"])
    cfg = _make_cfg(
        backends=[
            {"backend_id": "primary", "kind": "external", "model": "stub-model", "timeout_seconds": timeout_seconds}
        ]
    )

    async def scenario():
        service = GenerationService(cfg, adapters={"primary": adapter})
        handle = service.stream(GenerationRequest(prompt="hi", deadline_seconds=deadline_seconds))
        received = []
        started = time.monotonic()
        with pytest.raises(BackendTimeoutError) as excinfo:
            async for chunk in handle:
                received.append(chunk)
        elapsed = time.monotonic() - started
        return received, excinfo.value, elapsed, await handle.usage

    received, error, elapsed, usage = asyncio.run(scenario())

    assert [chunk.content for chunk in received] == ["first "]
    assert error.backend_id == "primary"
    assert elapsed < 2.0
    assert adapter.closed is True
    assert usage.aborted is True


def test_generate_uses_complete_call_even_when_adapter_can_stream() -> None:
    adapter = _NativeAdapter(["one ", "two"])
    adapter.release.set()

    async def scenario():
        service = GenerationService(_make_cfg(), adapters={"primary": adapter})
        return await service.generate(GenerationRequest(prompt="hi"))

    result = asyncio.run(scenario())

    assert result.content == "one two"
    assert result.streamed is False
    assert adapter.closed is False


def test_stream_error_before_first_chunk_is_retried() -> None:
    class _FlakyStream(_NativeAdapter):
        def __init__(self) -> None:
            super().__init__(["recovered"])
            self.opened = 0
            self.release.set()

        async def stream(self, request: BackendRequest):
            self.opened += 1
            if self.opened == 1:
                raise TransientNetworkError("connection reset")
            async for chunk in super().stream(request):
                yield chunk

    adapter = _FlakyStream()

    async def scenario():
        service = GenerationService(_make_cfg(), adapters={"primary": adapter})
        handle = service.stream(GenerationRequest(prompt="hi"))
        async with handle:
            return await handle.result()

    result = asyncio.run(scenario())

    assert result.content == "recovered"
    assert result.retry_count == 1
    assert adapter.opened == 2


def test_stream_error_after_partial_output_surfaces_to_consumer() -> None:
    class _BreaksMidway(_NativeAdapter):
        async def stream(self, request: BackendRequest):
            yield BackendChunk(content="half ")
            raise TransientNetworkError("connection reset")

    adapter = _BreaksMidway(["unused"])

    async def scenario():
        service = GenerationService(_make_cfg(), adapters={"primary": adapter})
        handle = service.stream(GenerationRequest(prompt="hi"))
        received = []
        with pytest.raises(TransientNetworkError):
            async for chunk in handle:
                received.append(chunk)
        usage = await handle.usage
        return received, usage

    received, usage = asyncio.run(scenario())

    assert [chunk.content for chunk in received] == ["half "]
    assert usage.aborted is True


def test_synthetic_split_keeps_words_whole_and_text_exact() -> None:
    text = "alpha beta gamma delta epsilon-zeta-eta-theta iota"

    pieces = split_for_synthetic_stream(text, 10)

    assert "".join(pieces) == text
    assert all(not piece.startswith(" ") for piece in pieces)
    assert "epsilon-zeta-eta-theta " in pieces
    assert split_for_synthetic_stream("", 10) == []


def test_synthetic_split_breaks_at_newlines_and_tabs() -> None:
    text = "line one\nline two\nline three\tcolumn\tcolumn"

    pieces = split_for_synthetic_stream(text, 10)

    assert "".join(pieces) == text
    assert len(pieces) > 2
    assert all(len(piece) <= 11 for piece in pieces)
    assert pieces[0] == "line one\n"
