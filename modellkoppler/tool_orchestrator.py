"""Tool execution: validation, per-call timeouts, records and pipelines."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from .errors import ToolExecutionError
from .json_helpers import argument_digest, to_bounded_json
from .models import ToolCallRecord, ToolCallRequest
from .tool_registry import RegisteredTool, ToolRegistry

LOG = logging.getLogger(__name__)

_OUTPUT_SUMMARY_LEN = 200


class FailureMode(str, Enum):
    """How a pipeline reacts to a failed, non-mandatory step."""

    STOP_ON_FIRST_FAILURE = "stop_on_first_failure"
    CONTINUE_WITH_PARTIAL_RESULTS = "continue_with_partial_results"


@dataclass(frozen=True)
class ToolStep:
    """One step of a sequential tool pipeline."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    mandatory: bool = False


@dataclass(frozen=True)
class ToolPipeline:
    """Sequential tool chain. `failure_mode` has no default on purpose."""

    steps: tuple[ToolStep, ...]
    failure_mode: FailureMode


@dataclass
class ToolOutcome:
    """Record plus raw output of one tool call."""

    record: ToolCallRecord
    output: Any = None


@dataclass
class PipelineResult:
    """Outcome of one pipeline run."""

    records: list[ToolCallRecord]
    outputs: list[Any]
    completed: bool
    stopped_at: int | None = None


async def _invoke(executor: Any, arguments: dict[str, Any], context: dict[str, Any]) -> Any:
    """Call `execute(arguments, context)` or a bare callable; sync callables run in a thread."""
    execute = getattr(executor, "execute", None)
    fn = execute if callable(execute) else executor
    if inspect.iscoroutinefunction(fn):
        return await fn(arguments, context)
    result = await asyncio.to_thread(fn, arguments, context)
    if inspect.isawaitable(result):
        return await result
    return result


class ToolOrchestrator:
    """Run registered tools on behalf of backends and callers."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        default_timeout_seconds: float = 60.0,
        max_concurrency: int = 4,
    ) -> None:
        self.registry = registry
        self.default_timeout_seconds = default_timeout_seconds
        self.max_concurrency = max(1, max_concurrency)

    def _failure(
        self,
        name: str,
        call_id: str,
        digest: str,
        started: float,
        error: str,
    ) -> ToolOutcome:
        LOG.warning("tool call failed tool=%s call_id=%s error=%s", name, call_id, error)
        return ToolOutcome(
            record=ToolCallRecord(
                name=name,
                call_id=call_id,
                argument_digest=digest,
                success=False,
                duration_ms=(time.monotonic() - started) * 1000.0,
                output_summary="",
                error=error,
            )
        )

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any] | str | None,
        *,
        call_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> ToolOutcome:
        """Validate and run one tool call; always returns a record, never raises for tool faults."""
        started = time.monotonic()
        tool_call_id = call_id or f"call_{uuid.uuid4().hex}"
        raw_args: Any = arguments if arguments is not None else {}
        if isinstance(raw_args, str):
            try:
                raw_args = json.loads(raw_args) if raw_args.strip() else {}
            except json.JSONDecodeError as exc:
                return self._failure(name, tool_call_id, argument_digest(raw_args), started, f"arguments are not valid JSON: {exc}")
        digest = argument_digest(raw_args)
        if not isinstance(raw_args, dict):
            return self._failure(name, tool_call_id, digest, started, "arguments must be a JSON object")

        tool = self.registry.get(name)
        if tool is None:
            return self._failure(name, tool_call_id, digest, started, f"unknown tool '{name}'")

        try:
            validated = tool.validate_arguments(raw_args)
        except ValidationError as exc:
            detail = "; ".join(
                f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
            )
            return self._failure(name, tool_call_id, digest, started, f"invalid arguments: {detail}")

        timeout = self._timeout_for(tool)
        LOG.info("dispatching tool call tool=%s call_id=%s timeout=%s", name, tool_call_id, timeout)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("tool call args tool=%s args=%s", name, to_bounded_json(validated))

        try:
            output = await asyncio.wait_for(_invoke(tool.executor, validated, dict(context or {})), timeout=timeout)
        except asyncio.TimeoutError:
            return self._failure(name, tool_call_id, digest, started, f"timed out after {timeout}s")
        except Exception as exc:
            LOG.debug("tool call raised tool=%s", name, exc_info=True)
            return self._failure(name, tool_call_id, digest, started, f"{type(exc).__name__}: {exc}")

        record = ToolCallRecord(
            name=name,
            call_id=tool_call_id,
            argument_digest=digest,
            success=True,
            duration_ms=(time.monotonic() - started) * 1000.0,
            output_summary=to_bounded_json(output, max_len=_OUTPUT_SUMMARY_LEN),
        )
        LOG.info("tool call finished tool=%s call_id=%s duration_ms=%.1f", name, tool_call_id, record.duration_ms)
        return ToolOutcome(record=record, output=output)

    def _timeout_for(self, tool: RegisteredTool) -> float:
        return tool.timeout_seconds or self.default_timeout_seconds

    async def execute_calls(
        self,
        calls: list[ToolCallRequest],
        *,
        context: dict[str, Any] | None = None,
        mandatory: frozenset[str] = frozenset(),
    ) -> tuple[list[ToolOutcome], list[dict[str, Any]]]:
        """Run the tool calls of one backend round with bounded concurrency.

        Returns outcomes and the `role=tool` messages for the next round. A failed
        mandatory tool raises ToolExecutionError carrying every record of the round.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_one(call: ToolCallRequest) -> ToolOutcome:
            async with semaphore:
                return await self.execute(call.name, call.arguments, call_id=call.call_id, context=context)

        outcomes = list(await asyncio.gather(*(run_one(call) for call in calls)))

        for outcome in outcomes:
            if not outcome.record.success and outcome.record.name in mandatory:
                raise ToolExecutionError(
                    f"mandatory tool '{outcome.record.name}' failed: {outcome.record.error}",
                    tool_name=outcome.record.name,
                    records=[item.record for item in outcomes],
                )

        messages = [self.format_tool_message(outcome) for outcome in outcomes]
        return outcomes, messages

    @staticmethod
    def format_tool_message(outcome: ToolOutcome) -> dict[str, Any]:
        """Format one `role=tool` message for backend continuation."""
        record = outcome.record
        if record.success:
            payload: dict[str, Any] = {"ok": True, "result": outcome.output}
        else:
            payload = {"ok": False, "error": record.error, "is_error": True}
        return {
            "role": "tool",
            "tool_call_id": record.call_id,
            "name": record.name,
            "content": to_bounded_json(payload, max_len=16000),
        }

    async def run_pipeline(
        self,
        pipeline: ToolPipeline,
        *,
        context: dict[str, Any] | None = None,
    ) -> PipelineResult:
        """Run steps in order; each step sees the previous output as `context['previous_output']`."""
        records: list[ToolCallRecord] = []
        outputs: list[Any] = []
        previous: Any = None
        for index, step in enumerate(pipeline.steps):
            step_context = {**(context or {}), "previous_output": previous, "step_index": index}
            outcome = await self.execute(step.name, step.arguments, context=step_context)
            records.append(outcome.record)
            outputs.append(outcome.output)
            if outcome.record.success:
                previous = outcome.output
                continue
            if step.mandatory:
                raise ToolExecutionError(
                    f"mandatory pipeline step '{step.name}' failed: {outcome.record.error}",
                    tool_name=step.name,
                    records=records,
                )
            if pipeline.failure_mode == FailureMode.STOP_ON_FIRST_FAILURE:
                LOG.info("pipeline stopped at step=%s tool=%s", index, step.name)
                return PipelineResult(records=records, outputs=outputs, completed=False, stopped_at=index)
        completed = all(record.success for record in records)
        return PipelineResult(records=records, outputs=outputs, completed=completed)
