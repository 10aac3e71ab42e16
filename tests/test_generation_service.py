import asyncio
import json

import pytest

from modellkoppler.adapters import BackendAdapter
from modellkoppler.config import KopplerConfig
from modellkoppler.errors import (
    AuthenticationError,
    ConfigurationError,
    ToolExecutionError,
    TransientNetworkError,
)
from modellkoppler.models import BackendRequest, BackendResult, GenerationRequest, ToolCallRequest
from modellkoppler.resilience import ResilienceWrapper
from modellkoppler.service import GenerationService
from modellkoppler.tool_registry import ToolRegistry

_USAGE = {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}


def _make_cfg(**overrides: object) -> KopplerConfig:
    raw = {
        "service_base_url": "http://127.0.0.1:10001",
        "default_backend": "primary",
        "backends": [
            {"backend_id": "primary", "kind": "external", "model": "model-a"},
            {"backend_id": "secondary", "kind": "external", "model": "model-b"},
        ],
        "retry": {"max_attempts": 1},
    }
    raw.update(overrides)
    return KopplerConfig.model_validate(raw)


class _ScriptedAdapter(BackendAdapter):
    """Returns queued results in order; exceptions in the queue are raised."""

    def __init__(self, backend_id: str, script: list[object]) -> None:
        self.backend_id = backend_id
        self.script = list(script)
        self.requests: list[BackendRequest] = []

    async def generate(self, request: BackendRequest) -> BackendResult:
        self.requests.append(request)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        assert isinstance(item, BackendResult)
        return item


def _tool_round(name: str = "lookup", arguments: str = '{"city": "Berlin"}') -> BackendResult:
    return BackendResult(
        content="",
        model="model-a",
        usage=dict(_USAGE),
        tool_calls=[ToolCallRequest(call_id="call_1", name=name, arguments=arguments)],
        finish_reason="tool_calls",
    )


def _answer(text: str, model: str = "model-a") -> BackendResult:
    return BackendResult(content=text, model=model, usage=dict(_USAGE), finish_reason="stop")


def _lookup_registry(executor: object) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        "lookup",
        description="Look up weather for a city.",
        parameters={
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
            "additionalProperties": False,
        },
        executor=executor,
    )
    return registry


def test_non_mandatory_tool_failure_keeps_primary_content() -> None:
    async def broken_lookup(arguments, context):
        raise RuntimeError("weather service down")

    primary = _ScriptedAdapter("primary", [_tool_round(), _answer("It is probably sunny.")])
    service = GenerationService(
        _make_cfg(),
        adapters={"primary": primary, "secondary": _ScriptedAdapter("secondary", [_answer("unused")])},
        registry=_lookup_registry(broken_lookup),
    )

    result = asyncio.run(service.generate(GenerationRequest(prompt="weather?", backend="primary", enable_tools=True)))

    assert result.content == "It is probably sunny."
    assert len(result.tool_calls) == 1
    record = result.tool_calls[0]
    assert record.name == "lookup"
    assert record.success is False
    assert "weather service down" in (record.error or "")
    assert result.usage.input_tokens == 10
    assert result.usage.output_tokens == 4
    assert result.usage.complete is True

    second_round = primary.requests[1].messages
    assert second_round[-2]["role"] == "assistant"
    assert second_round[-2]["tool_calls"][0]["function"]["name"] == "lookup"
    tool_message = second_round[-1]
    assert tool_message["role"] == "tool"
    assert tool_message["tool_call_id"] == "call_1"
    assert json.loads(tool_message["content"])["ok"] is False


def test_successful_tool_round_is_recorded_and_fed_back() -> None:
    seen: list[dict] = []

    def lookup(arguments, context):
        seen.append(arguments)
        return {"city": arguments["city"], "forecast": "sunny"}

    primary = _ScriptedAdapter("primary", [_tool_round(), _answer("Sunny in Berlin.")])
    service = GenerationService(
        _make_cfg(),
        adapters={"primary": primary, "secondary": _ScriptedAdapter("secondary", [_answer("unused")])},
        registry=_lookup_registry(lookup),
    )

    result = asyncio.run(service.generate(GenerationRequest(prompt="weather?", enable_tools=True)))

    assert result.content == "Sunny in Berlin."
    assert seen == [{"city": "Berlin"}]
    assert result.tool_calls[0].success is True
    assert "sunny" in result.tool_calls[0].output_summary
    assert primary.requests[0].tools[0]["function"]["name"] == "lookup"


def test_mandatory_tool_failure_fails_generation_with_records() -> None:
    async def broken_lookup(arguments, context):
        raise RuntimeError("weather service down")

    primary = _ScriptedAdapter("primary", [_tool_round(), _answer("never returned")])
    service = GenerationService(
        _make_cfg(),
        adapters={"primary": primary, "secondary": _ScriptedAdapter("secondary", [_answer("fallback")])},
        registry=_lookup_registry(broken_lookup),
    )
    request = GenerationRequest(prompt="weather?", enable_tools=True, mandatory_tools=frozenset({"lookup"}))

    with pytest.raises(ToolExecutionError) as excinfo:
        asyncio.run(service.generate(request))

    assert excinfo.value.tool_name == "lookup"
    assert len(excinfo.value.records) == 1
    assert excinfo.value.records[0].success is False


def test_tool_loop_is_bounded() -> None:
    primary = _ScriptedAdapter("primary", [_tool_round()])
    service = GenerationService(
        _make_cfg(max_tool_loops=3),
        adapters={"primary": primary, "secondary": _ScriptedAdapter("secondary", [_answer("unused")])},
        registry=_lookup_registry(lambda arguments, context: "ok"),
    )

    with pytest.raises(ToolExecutionError) as excinfo:
        asyncio.run(service.generate(GenerationRequest(prompt="loop", backend="primary", enable_tools=True)))

    assert len(primary.requests) == 3
    assert len(excinfo.value.records) == 3


def test_tools_are_not_injected_unless_enabled() -> None:
    primary = _ScriptedAdapter("primary", [_answer("plain")])
    service = GenerationService(
        _make_cfg(),
        adapters={"primary": primary, "secondary": _ScriptedAdapter("secondary", [_answer("unused")])},
        registry=_lookup_registry(lambda arguments, context: "ok"),
    )

    result = asyncio.run(service.generate(GenerationRequest(prompt="hi", system="be brief", temperature=0.3)))

    assert result.content == "plain"
    request = primary.requests[0]
    assert request.tools == []
    assert request.messages == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]
    assert request.model == "model-a"
    assert request.temperature == 0.3


def test_auto_selection_falls_over_to_next_backend() -> None:
    primary = _ScriptedAdapter("primary", [TransientNetworkError("connection refused")])
    secondary = _ScriptedAdapter("secondary", [_answer("from secondary", model="model-b")])
    service = GenerationService(_make_cfg(), adapters={"primary": primary, "secondary": secondary})

    result = asyncio.run(service.generate(GenerationRequest(prompt="hi")))

    assert result.content == "from secondary"
    assert result.backend_id == "secondary"
    assert result.model == "model-b"
    assert result.usage.backend_id == "secondary"


def test_explicit_backend_surfaces_its_error_without_fall_over() -> None:
    primary = _ScriptedAdapter("primary", [AuthenticationError("bad key")])
    secondary = _ScriptedAdapter("secondary", [_answer("unused")])
    service = GenerationService(_make_cfg(), adapters={"primary": primary, "secondary": secondary})

    with pytest.raises(AuthenticationError) as excinfo:
        asyncio.run(service.generate(GenerationRequest(prompt="hi", backend="primary")))

    assert excinfo.value.backend_id == "primary"
    assert secondary.requests == []


def test_unknown_backend_is_a_configuration_error() -> None:
    service = GenerationService(
        _make_cfg(),
        adapters={
            "primary": _ScriptedAdapter("primary", [_answer("a")]),
            "secondary": _ScriptedAdapter("secondary", [_answer("b")]),
        },
    )

    with pytest.raises(ConfigurationError):
        asyncio.run(service.generate(GenerationRequest(prompt="hi", backend="nope")))


def test_external_backend_without_adapter_object_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        GenerationService(_make_cfg(), adapters={"primary": _ScriptedAdapter("primary", [_answer("a")])})


def test_open_circuit_backends_are_tried_last() -> None:
    cfg = _make_cfg(circuit_breaker={"failure_threshold": 1, "cooldown_seconds": 300})
    primary = _ScriptedAdapter("primary", [TransientNetworkError("down")])
    secondary = _ScriptedAdapter("secondary", [_answer("healthy", model="model-b")])
    service = GenerationService(
        cfg,
        adapters={"primary": primary, "secondary": secondary},
        resilience=ResilienceWrapper(cfg),
    )

    async def scenario():
        first = await service.generate(GenerationRequest(prompt="one"))
        second = await service.generate(GenerationRequest(prompt="two"))
        return first, second

    first, second = asyncio.run(scenario())

    assert first.backend_id == "secondary"
    assert second.backend_id == "secondary"
    assert len(primary.requests) == 1
    health = service.health()
    assert health["degraded"] is True
    states = {entry["backend_id"]: entry["state"] for entry in health["backends"]}
    assert states == {"primary": "open", "secondary": "closed"}
