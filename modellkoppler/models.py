"""Canonical request, result and record shapes."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

AUTO_BACKEND = "auto"


class GenerationRequest(BaseModel):
    """One caller request; immutable once submitted."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    prompt: str
    system: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    backend: str = AUTO_BACKEND
    model: str | None = None
    enable_tools: bool = False
    mandatory_tools: frozenset[str] = frozenset()
    evaluate: bool = False
    evaluation_criteria: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    deadline_seconds: float | None = None

    @field_validator("deadline_seconds")
    @classmethod
    def _validate_deadline(cls, value: float | None) -> float | None:
        """Deadlines are relative and must be positive."""
        if value is not None and value <= 0:
            raise ValueError("deadline_seconds must be > 0")
        return value

    def deadline_at(self, started: float) -> float | None:
        """Absolute monotonic deadline for a request submitted at `started`."""
        if self.deadline_seconds is None:
            return None
        return started + self.deadline_seconds


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool invocation requested by a backend."""

    call_id: str
    name: str
    arguments: str = "{}"


@dataclass
class BackendRequest:
    """What an adapter receives: messages plus sampling and tool schemas."""

    messages: list[dict[str, Any]]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class BackendResult:
    """What an adapter returns from one complete call."""

    content: str
    model: str | None = None
    usage: dict[str, Any] | None = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str | None = None
    raw: dict[str, Any] | None = None


@dataclass
class BackendChunk:
    """One incremental piece from a native adapter stream.

    The last chunk of a stream usually carries `usage` and may have empty content.
    """

    content: str = ""
    model: str | None = None
    usage: dict[str, Any] | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class StreamChunk:
    """Ordered piece of output delivered to the consumer."""

    index: int
    content: str
    final: bool = False


@dataclass(frozen=True)
class UsageRecord:
    """Normalized usage summary for one generation."""

    backend_id: str
    model: str | None
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost: float | None
    requested_at: datetime
    duration_ms: float = 0.0
    complete: bool = True
    aborted: bool = False

    def __post_init__(self) -> None:
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("usage counters must be >= 0")
        if self.input_tokens + self.output_tokens != self.total_tokens:
            raise ValueError(
                f"usage total {self.total_tokens} != input {self.input_tokens} + output {self.output_tokens}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend_id": self.backend_id,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost": self.estimated_cost,
            "requested_at": self.requested_at.isoformat(),
            "duration_ms": round(self.duration_ms, 3),
            "complete": self.complete,
            "aborted": self.aborted,
        }


@dataclass(frozen=True)
class ToolCallRecord:
    """Outcome of one tool invocation, recorded regardless of success."""

    name: str
    call_id: str
    argument_digest: str
    success: bool
    duration_ms: float
    output_summary: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "call_id": self.call_id,
            "argument_digest": self.argument_digest,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 3),
            "output_summary": self.output_summary,
            "error": self.error,
        }


@dataclass(frozen=True)
class EvaluationRecord:
    """Score assigned to a generation by the evaluator backend."""

    score: float
    reasoning: str
    backend_id: str
    model: str | None
    duration_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "reasoning": self.reasoning,
            "backend_id": self.backend_id,
            "model": self.model,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass(frozen=True)
class GenerationResult:
    """Canonical outcome of one generation."""

    content: str
    backend_id: str
    model: str | None
    usage: UsageRecord
    duration_ms: float
    tool_calls: tuple[ToolCallRecord, ...] = ()
    evaluation: EvaluationRecord | None = None
    retry_count: int = 0
    streamed: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Render the result for JSON responses; absent evaluation is omitted."""
        out: dict[str, Any] = {
            "content": self.content,
            "backend_id": self.backend_id,
            "model": self.model,
            "usage": self.usage.to_dict(),
            "tool_calls": [record.to_dict() for record in self.tool_calls],
            "duration_ms": round(self.duration_ms, 3),
            "retry_count": self.retry_count,
            "streamed": self.streamed,
        }
        if self.evaluation is not None:
            out["evaluation"] = self.evaluation.to_dict()
        return out


class CircuitStatus(str, Enum):
    """Circuit breaker position."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitState:
    """Per-backend circuit record owned by the resilience wrapper."""

    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    first_failure_at: float | None = None
    cooldown_until: float | None = None
    trial_in_flight: bool = False

    def to_dict(self, now: float | None = None) -> dict[str, Any]:
        current = time.monotonic() if now is None else now
        remaining = None
        if self.cooldown_until is not None:
            remaining = max(0.0, self.cooldown_until - current)
        return {
            "state": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "cooldown_remaining_seconds": remaining,
        }
