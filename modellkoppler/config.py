"""Configuration models and loaders for modellkoppler.

This module defines the runtime configuration schema (backends, resilience
defaults, tools, evaluation, logging) and how values are loaded from YAML plus
environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "modellkoppler/config.yaml"

RetryableKind = Literal["timeout", "rate_limit", "network"]


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class RetryPolicy(BaseModel):
    """Retry behavior for one backend call."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = 3
    base_delay_ms: int = 500
    backoff_multiplier: float = 2.0
    jitter: float = 0.2
    max_delay_ms: int = 30000
    retryable: frozenset[RetryableKind] = frozenset({"timeout", "rate_limit", "network"})

    @field_validator("max_attempts")
    @classmethod
    def _validate_attempts(cls, value: int) -> int:
        """Require at least one attempt."""
        if value < 1:
            raise ValueError("max_attempts must be >= 1")
        return value

    @field_validator("jitter")
    @classmethod
    def _validate_jitter(cls, value: float) -> float:
        """Keep the multiplicative jitter bound inside [0, 1)."""
        if value < 0 or value >= 1:
            raise ValueError("jitter must be >= 0 and < 1")
        return value


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds for one backend."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    failure_threshold: int = 5
    window_seconds: float = 60.0
    cooldown_seconds: float = 30.0


class RateLimitConfig(BaseModel):
    """Token bucket quota for one backend."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    calls: int
    period_seconds: float = 1.0
    on_limit: Literal["wait", "reject"] = "wait"

    @field_validator("calls")
    @classmethod
    def _validate_calls(cls, value: int) -> int:
        """A quota of zero would block every call forever."""
        if value < 1:
            raise ValueError("rate_limit.calls must be >= 1")
        return value


class UsageMappingConfig(BaseModel):
    """Explicit field names used to read usage counters from raw backend results."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    input_field: str
    output_field: str
    total_field: str | None = None
    cost_field: str | None = None
    container_key: str | None = None


class BackendConfig(BaseModel):
    """Configuration for one generation backend."""

    model_config = ConfigDict(extra="forbid")

    backend_id: str
    kind: Literal["openai_compatible", "external"] = "openai_compatible"
    base_url: str | None = None
    api_key: str | None = None
    model: str | None = None
    timeout_seconds: float = 120.0
    usage_format: Literal["openai", "anthropic", "google"] = "openai"
    usage_mapping: UsageMappingConfig | None = None
    input_cost_per_1k: float | None = None
    output_cost_per_1k: float | None = None
    retry: RetryPolicy | None = None
    circuit_breaker: CircuitBreakerConfig | None = None
    rate_limit: RateLimitConfig | None = None

    @model_validator(mode="after")
    def _validate_reachability(self) -> "BackendConfig":
        """HTTP backends need a base URL; external ones are injected in code."""
        if self.kind == "openai_compatible" and not self.base_url:
            raise ValueError(f"backend '{self.backend_id}' of kind openai_compatible requires base_url")
        return self


class EvaluationConfig(BaseModel):
    """Optional second-call scoring of produced content."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    backend_id: str | None = None
    model: str | None = None
    max_attempts: int = 2
    temperature: float = 0.1
    max_tokens: int = 256

    @field_validator("max_attempts")
    @classmethod
    def _validate_small_budget(cls, value: int) -> int:
        """Evaluation is best-effort and keeps a 1-2 attempt budget."""
        if value not in {1, 2}:
            raise ValueError("evaluation.max_attempts must be 1 or 2")
        return value


class KopplerConfig(BaseModel):
    """Top-level gateway configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8080"
    service_api_key: str | None = None

    default_backend: str | None = None
    backends: list[BackendConfig] = Field(default_factory=list)

    retry: RetryPolicy | None = None
    circuit_breaker: CircuitBreakerConfig | None = None
    rate_limit: RateLimitConfig | None = None

    max_tool_concurrency: int | None = None
    max_tool_loops: int | None = None
    tool_call_timeout_seconds: float | None = None
    synthetic_chunk_size: int | None = None

    evaluation: EvaluationConfig | None = None
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _validate_and_fill_defaults(self) -> "KopplerConfig":
        """Validate cross-field references and fill fallback defaults."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")

        ids = [backend.backend_id for backend in self.backends]
        duplicates = sorted({backend_id for backend_id in ids if ids.count(backend_id) > 1})
        if duplicates:
            raise ValueError(f"duplicate backend_id values: {', '.join(duplicates)}")
        if self.default_backend is not None and self.default_backend not in ids:
            raise ValueError(f"default_backend '{self.default_backend}' is not a configured backend")

        if self.retry is None:
            self.retry = RetryPolicy()
        if self.circuit_breaker is None:
            self.circuit_breaker = CircuitBreakerConfig()
        if self.max_tool_concurrency is None:
            self.max_tool_concurrency = 4
        if self.max_tool_loops is None:
            self.max_tool_loops = 8
        if self.tool_call_timeout_seconds is None:
            self.tool_call_timeout_seconds = 60.0
        if self.synthetic_chunk_size is None:
            self.synthetic_chunk_size = 24
        if self.evaluation is None:
            self.evaluation = EvaluationConfig()
        if self.logging is None:
            self.logging = LoggingConfig()
        if self.evaluation.backend_id is not None and self.evaluation.backend_id not in ids:
            raise ValueError(f"evaluation.backend_id '{self.evaluation.backend_id}' is not a configured backend")
        return self

    @field_validator("backends", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for list fields as an empty list."""
        if value is None:
            return []
        return value

    def backend(self, backend_id: str) -> BackendConfig | None:
        """Return the configuration of one backend id, if configured."""
        for backend in self.backends:
            if backend.backend_id == backend_id:
                return backend
        return None

    def retry_policy_for(self, backend_id: str) -> RetryPolicy:
        """Return the backend retry policy or the global default."""
        backend = self.backend(backend_id)
        if backend is not None and backend.retry is not None:
            return backend.retry
        return self.retry or RetryPolicy()

    def circuit_breaker_for(self, backend_id: str) -> CircuitBreakerConfig:
        """Return the backend circuit thresholds or the global default."""
        backend = self.backend(backend_id)
        if backend is not None and backend.circuit_breaker is not None:
            return backend.circuit_breaker
        return self.circuit_breaker or CircuitBreakerConfig()

    def rate_limit_for(self, backend_id: str) -> RateLimitConfig | None:
        """Return the backend quota, the global default, or None for unlimited."""
        backend = self.backend(backend_id)
        if backend is not None and backend.rate_limit is not None:
            return backend.rate_limit
        return self.rate_limit


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "service_base_url": "MODELLKOPPLER_SERVICE_BASE_URL",
        "service_api_key": "MODELLKOPPLER_SERVICE_API_KEY",
        "default_backend": "MODELLKOPPLER_DEFAULT_BACKEND",
        "max_tool_concurrency": "MODELLKOPPLER_MAX_TOOL_CONCURRENCY",
        "max_tool_loops": "MODELLKOPPLER_MAX_TOOL_LOOPS",
        "tool_call_timeout_seconds": "MODELLKOPPLER_TOOL_CALL_TIMEOUT_SECONDS",
        "synthetic_chunk_size": "MODELLKOPPLER_SYNTHETIC_CHUNK_SIZE",
        "evaluation.enabled": "MODELLKOPPLER_EVALUATION_ENABLED",
        "logging.level": "MODELLKOPPLER_LOG_LEVEL",
        "logging.json_logs": "MODELLKOPPLER_LOG_JSON",
    }

    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key in {"max_tool_concurrency", "max_tool_loops", "synthetic_chunk_size"}:
            out[key] = int(value)
        elif key == "tool_call_timeout_seconds":
            out[key] = float(value)
        elif key == "evaluation.enabled":
            evaluation = dict(out.get("evaluation") or {})
            evaluation["enabled"] = value.lower() in {"1", "true", "yes", "on"}
            out["evaluation"] = evaluation
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    # Per-backend secrets: MODELLKOPPLER_BACKEND_<ID>_API_KEY
    for backend in out.get("backends") or []:
        if not isinstance(backend, dict) or not backend.get("backend_id"):
            continue
        env_id = "".join(char if char.isalnum() else "_" for char in str(backend["backend_id"])).upper()
        api_key = os.getenv(f"MODELLKOPPLER_BACKEND_{env_id}_API_KEY")
        if api_key is not None:
            backend["api_key"] = api_key

    return out


def load_config(path: str | None = None) -> KopplerConfig:
    """Load, merge, and validate gateway configuration."""
    final_path = path or os.getenv("MODELLKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return KopplerConfig.model_validate(raw)
