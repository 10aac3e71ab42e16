"""Usage analytics: raw backend usage -> `UsageRecord`, resolved as a future.

Field translation happens at exactly one point: `mapping_for()` selects the
backend's `UsageFieldMapping`, either from `USAGE_FIELD_MAPPINGS` by the
configured `usage_format` or from an explicit `usage_mapping` override.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .config import BackendConfig
from .models import UsageRecord

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageFieldMapping:
    """Names of the usage counters in one backend's raw usage payload."""

    input_field: str
    output_field: str
    total_field: str | None = None
    cost_field: str | None = None
    container_key: str | None = None


USAGE_FIELD_MAPPINGS: dict[str, UsageFieldMapping] = {
    "openai": UsageFieldMapping("prompt_tokens", "completion_tokens", total_field="total_tokens", cost_field="cost"),
    "anthropic": UsageFieldMapping("input_tokens", "output_tokens"),
    "google": UsageFieldMapping(
        "promptTokenCount",
        "candidatesTokenCount",
        total_field="totalTokenCount",
        container_key="usageMetadata",
    ),
}


def mapping_for(backend_cfg: BackendConfig | None) -> UsageFieldMapping:
    """Return the usage field mapping for one backend."""
    if backend_cfg is None:
        return USAGE_FIELD_MAPPINGS["openai"]
    if backend_cfg.usage_mapping is not None:
        override = backend_cfg.usage_mapping
        return UsageFieldMapping(
            input_field=override.input_field,
            output_field=override.output_field,
            total_field=override.total_field,
            cost_field=override.cost_field,
            container_key=override.container_key,
        )
    return USAGE_FIELD_MAPPINGS[backend_cfg.usage_format]


def _count(raw: dict[str, Any], name: str) -> int:
    value = raw.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"usage field '{name}' missing or not numeric")
    if value < 0:
        raise ValueError(f"usage field '{name}' is negative")
    return int(value)


@dataclass(frozen=True)
class UsageCounters:
    """Counters read from one raw usage payload."""

    input_tokens: int
    output_tokens: int
    reported_total: int | None
    cost: float | None


def read_usage(raw: dict[str, Any], mapping: UsageFieldMapping) -> UsageCounters:
    """Read counters through the mapping; raises ValueError on missing fields."""
    if mapping.container_key and isinstance(raw.get(mapping.container_key), dict):
        raw = raw[mapping.container_key]
    reported_total = None
    if mapping.total_field and raw.get(mapping.total_field) is not None:
        reported_total = _count(raw, mapping.total_field)
    cost = None
    if mapping.cost_field:
        cost_value = raw.get(mapping.cost_field)
        if isinstance(cost_value, (int, float)) and not isinstance(cost_value, bool):
            cost = float(cost_value)
    return UsageCounters(
        input_tokens=_count(raw, mapping.input_field),
        output_tokens=_count(raw, mapping.output_field),
        reported_total=reported_total,
        cost=cost,
    )


class AnalyticsCollector:
    """Accumulate usage of one generation and resolve it as a deferred record.

    A generation may span several backend calls (tool rounds); their counters
    are summed. `usage` is an `asyncio.Future` that the chunk stream never
    waits on.
    """

    def __init__(
        self,
        *,
        backend_id: str,
        backend_cfg: BackendConfig | None,
        model: str | None = None,
        future: asyncio.Future[UsageRecord] | None = None,
    ) -> None:
        self.backend_id = backend_id
        self.model = model
        self._mapping = mapping_for(backend_cfg)
        self._input_cost = backend_cfg.input_cost_per_1k if backend_cfg else None
        self._output_cost = backend_cfg.output_cost_per_1k if backend_cfg else None
        self._requested_at = datetime.now(timezone.utc)
        self._started = time.monotonic()
        self._input = 0
        self._output = 0
        self._cost_hint: float | None = None
        self._calls = 0
        self._reported_calls = 0
        if future is None:
            future = asyncio.get_running_loop().create_future()
        self.usage: asyncio.Future[UsageRecord] = future

    def set_model(self, model: str | None) -> None:
        if model:
            self.model = model

    def add_usage(self, raw: dict[str, Any] | None) -> None:
        """Fold the raw usage payload of one backend call into the totals."""
        self._calls += 1
        if raw is None:
            LOG.debug("backend reported no usage backend=%s", self.backend_id)
            return
        try:
            counters = read_usage(raw, self._mapping)
        except ValueError as exc:
            LOG.warning("usage payload unreadable backend=%s error=%s", self.backend_id, exc)
            return
        computed = counters.input_tokens + counters.output_tokens
        if counters.reported_total is not None and counters.reported_total != computed:
            LOG.warning(
                "usage total mismatch backend=%s reported_total=%s input=%s output=%s using=%s",
                self.backend_id,
                counters.reported_total,
                counters.input_tokens,
                counters.output_tokens,
                computed,
            )
        self._input += counters.input_tokens
        self._output += counters.output_tokens
        if counters.cost is not None:
            self._cost_hint = (self._cost_hint or 0.0) + counters.cost
        self._reported_calls += 1

    def _estimated_cost(self) -> float | None:
        if self._cost_hint is not None:
            return self._cost_hint
        if self._input_cost is None and self._output_cost is None:
            return None
        return round(
            self._input * (self._input_cost or 0.0) / 1000.0 + self._output * (self._output_cost or 0.0) / 1000.0,
            8,
        )

    def _build(self, *, aborted: bool) -> UsageRecord:
        complete = self._calls > 0 and self._reported_calls == self._calls and not aborted
        return UsageRecord(
            backend_id=self.backend_id,
            model=self.model,
            input_tokens=self._input,
            output_tokens=self._output,
            total_tokens=self._input + self._output,
            estimated_cost=self._estimated_cost(),
            requested_at=self._requested_at,
            duration_ms=(time.monotonic() - self._started) * 1000.0,
            complete=complete,
            aborted=aborted,
        )

    def _resolve(self, *, aborted: bool) -> UsageRecord | None:
        if self.usage.done():
            return None
        try:
            record = self._build(aborted=aborted)
        except Exception as exc:
            LOG.warning("usage record build failed backend=%s error=%s", self.backend_id, exc)
            record = UsageRecord(
                backend_id=self.backend_id,
                model=self.model,
                input_tokens=0,
                output_tokens=0,
                total_tokens=0,
                estimated_cost=None,
                requested_at=self._requested_at,
                complete=False,
                aborted=aborted,
            )
        self.usage.set_result(record)
        LOG.debug(
            "usage resolved backend=%s input=%s output=%s complete=%s aborted=%s",
            self.backend_id,
            record.input_tokens,
            record.output_tokens,
            record.complete,
            record.aborted,
        )
        return record

    def complete(self) -> UsageRecord:
        """Resolve the usage future after the generation finished."""
        self._resolve(aborted=False)
        return self.usage.result()

    def abort(self) -> UsageRecord:
        """Resolve the usage future for an abandoned or failed generation."""
        self._resolve(aborted=True)
        return self.usage.result()
