"""Exception taxonomy shared by adapters, resilience, tools and evaluation."""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for all errors surfaced by the gateway."""

    retryable = False
    kind = "gateway"

    def __init__(self, message: str, *, backend_id: str | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.backend_id = backend_id
        self.attempts = attempts

    def __str__(self) -> str:
        parts = [self.message]
        if self.backend_id:
            parts.append(f"backend={self.backend_id}")
        if self.attempts:
            parts.append(f"attempts={self.attempts}")
        return " ".join(parts)


class ConfigurationError(GatewayError):
    """Invalid setup: unknown backend, bad model, duplicate tool. Never retried."""

    kind = "configuration"


class AuthenticationError(GatewayError):
    """Backend rejected the credentials. Never retried."""

    kind = "authentication"


class TransientError(GatewayError):
    """Failure class the resilience layer may retry."""

    retryable = True


class RateLimitError(TransientError):
    """Backend (or the local limiter) refused the call because of quota."""

    kind = "rate_limit"

    def __init__(
        self,
        message: str,
        *,
        backend_id: str | None = None,
        attempts: int = 0,
        retry_after: float | None = None,
        local: bool = False,
    ) -> None:
        super().__init__(message, backend_id=backend_id, attempts=attempts)
        self.retry_after = retry_after
        self.local = local


class TimeoutError(TransientError):  # noqa: A001
    """A backend attempt exceeded its time budget."""

    kind = "timeout"


class TransientNetworkError(TransientError):
    """Connection failures, truncated payloads and 5xx responses."""

    kind = "network"


class CircuitOpenError(GatewayError):
    """The backend circuit is open; the call was rejected without a network attempt."""

    kind = "circuit_open"

    def __init__(
        self,
        message: str,
        *,
        backend_id: str | None = None,
        attempts: int = 0,
        retry_after: float = 0.0,
    ) -> None:
        super().__init__(message, backend_id=backend_id, attempts=attempts)
        self.retry_after = retry_after


class ToolExecutionError(GatewayError):
    """A mandatory tool failed, or the tool loop could not finish."""

    kind = "tool"

    def __init__(self, message: str, *, tool_name: str | None = None, records: list[Any] | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.records = list(records or [])


class EvaluationError(GatewayError):
    """Evaluation call failed or returned an unusable score. Never fatal."""

    kind = "evaluation"
