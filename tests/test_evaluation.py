import asyncio

import pytest

from modellkoppler.adapters import BackendAdapter
from modellkoppler.config import KopplerConfig
from modellkoppler.errors import EvaluationError, TransientNetworkError
from modellkoppler.evaluation import build_evaluation_messages, parse_evaluation
from modellkoppler.models import BackendRequest, BackendResult, GenerationRequest
from modellkoppler.resilience import ResilienceWrapper
from modellkoppler.service import GenerationService


def _make_cfg(**overrides: object) -> KopplerConfig:
    raw = {
        "service_base_url": "http://127.0.0.1:10001",
        "default_backend": "primary",
        "backends": [
            {"backend_id": "primary", "kind": "external", "model": "gen-model"},
            {"backend_id": "judge", "kind": "external", "model": "judge-model"},
        ],
        "retry": {"max_attempts": 3, "base_delay_ms": 1},
        "evaluation": {"backend_id": "judge", "max_attempts": 2},
    }
    raw.update(overrides)
    return KopplerConfig.model_validate(raw)


async def _no_sleep(_delay: float) -> None:
    return None


class _Generator(BackendAdapter):
    backend_id = "primary"

    async def generate(self, request: BackendRequest) -> BackendResult:
        return BackendResult(
            content="Paris is the capital of France.",
            model="gen-model",
            usage={"prompt_tokens": 9, "completion_tokens": 7, "total_tokens": 16},
        )


class _Judge(BackendAdapter):
    backend_id = "judge"

    def __init__(self, reply: str | None = None) -> None:
        self.reply = reply
        self.calls = 0
        self.requests: list[BackendRequest] = []

    async def generate(self, request: BackendRequest) -> BackendResult:
        self.calls += 1
        self.requests.append(request)
        if self.reply is None:
            raise TransientNetworkError("judge unreachable")
        return BackendResult(content=self.reply, model="judge-model")


def _service(cfg: KopplerConfig, judge: _Judge) -> GenerationService:
    return GenerationService(
        cfg,
        adapters={"primary": _Generator(), "judge": judge},
        resilience=ResilienceWrapper(cfg, sleep=_no_sleep),
    )


def test_unreachable_evaluator_leaves_content_and_usage_intact() -> None:
    judge = _Judge(reply=None)
    service = _service(_make_cfg(), judge)

    result = asyncio.run(service.generate(GenerationRequest(prompt="Capital of France?", evaluate=True)))

    assert result.content == "Paris is the capital of France."
    assert result.usage.total_tokens == 16
    assert result.usage.complete is True
    assert result.evaluation is None
    assert "evaluation" not in result.to_dict()
    assert judge.calls == 2


def test_evaluation_record_is_attached_when_evaluator_answers() -> None:
    judge = _Judge(reply='Verdict: {"score": 9, "reasoning": "Correct and concise."}')
    service = _service(_make_cfg(), judge)

    result = asyncio.run(
        service.generate(
            GenerationRequest(prompt="Capital of France?", evaluate=True, evaluation_criteria="factual accuracy")
        )
    )

    assert result.evaluation is not None
    assert result.evaluation.score == pytest.approx(9.0)
    assert result.evaluation.reasoning == "Correct and concise."
    assert result.evaluation.backend_id == "judge"
    system_prompt = judge.requests[0].messages[0]["content"]
    assert "factual accuracy" in system_prompt
    assert judge.requests[0].model is None


def test_evaluation_is_skipped_unless_requested_or_enabled() -> None:
    judge = _Judge(reply='{"score": 5}')
    service = _service(_make_cfg(), judge)

    result = asyncio.run(service.generate(GenerationRequest(prompt="hi")))

    assert result.evaluation is None
    assert judge.calls == 0


def test_evaluation_enabled_in_config_applies_to_every_request() -> None:
    judge = _Judge(reply='{"score": 6, "reasoning": "ok"}')
    cfg = _make_cfg(evaluation={"enabled": True, "backend_id": "judge"})
    service = _service(cfg, judge)

    result = asyncio.run(service.generate(GenerationRequest(prompt="hi")))

    assert result.evaluation is not None
    assert judge.calls == 1


def test_streamed_generation_resolves_evaluation_future_separately() -> None:
    judge = _Judge(reply='{"score": 7, "reasoning": "fine"}')
    service = _service(_make_cfg(), judge)

    async def scenario():
        handle = service.stream(GenerationRequest(prompt="hi", evaluate=True))
        async with handle:
            chunks = [chunk async for chunk in handle]
            usage = await handle.usage
            evaluation = await handle.evaluation
        return chunks, usage, evaluation

    chunks, usage, evaluation = asyncio.run(scenario())

    assert chunks[-1].final is True
    assert usage.total_tokens == 16
    assert evaluation is not None
    assert evaluation.score == pytest.approx(7.0)


def test_parse_evaluation_clamps_score_and_rejects_garbage() -> None:
    assert parse_evaluation('{"score": 14, "reasoning": "overly generous"}') == (10.0, "overly generous")
    assert parse_evaluation('{"score": -2}') == (0.0, "")

    with pytest.raises(EvaluationError):
        parse_evaluation("no json here")
    with pytest.raises(EvaluationError):
        parse_evaluation('{"score": "high"}')


def test_evaluation_messages_bound_the_judged_content() -> None:
    messages = build_evaluation_messages("prompt", "x" * 50000)

    assert messages[0]["role"] == "system"
    assert len(messages[1]["content"]) < 20000
