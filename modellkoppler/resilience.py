"""Retry, circuit breaking and rate limiting around backend calls.

Every adapter call goes through `ResilienceWrapper`. Health state is kept in
one `BackendHealth` record per backend id, created on first use; all state
transitions for a backend happen under that record's lock, so concurrent
generations on different backends never contend with each other.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, TypeVar

from .config import KopplerConfig, RateLimitConfig, RetryPolicy
from .errors import (
    CircuitOpenError,
    GatewayError,
    RateLimitError,
    TimeoutError as BackendTimeoutError,
    TransientNetworkError,
)
from .models import CircuitState, CircuitStatus

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class TokenBucket:
    """Token bucket where each spent token returns one period after it was spent.

    This keeps every window of `period_seconds` at or below `calls` admissions,
    including the burst at startup.
    """

    def __init__(self, cfg: RateLimitConfig) -> None:
        self.cfg = cfg
        self._spent: deque[float] = deque()

    def _refill(self, now: float) -> None:
        while self._spent and now - self._spent[0] >= self.cfg.period_seconds:
            self._spent.popleft()

    def try_acquire(self, now: float) -> float:
        """Take one token; return 0.0 on success, else seconds until the next refill."""
        self._refill(now)
        if len(self._spent) < self.cfg.calls:
            self._spent.append(now)
            return 0.0
        return max(0.0, self._spent[0] + self.cfg.period_seconds - now)

    def available(self, now: float) -> int:
        self._refill(now)
        return self.cfg.calls - len(self._spent)


@dataclass
class BackendHealth:
    """Mutable health record for one backend id."""

    backend_id: str
    circuit: CircuitState = field(default_factory=CircuitState)
    limiter: TokenBucket | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass
class AttemptCounter:
    """Attempt tally of one resilient streaming call."""

    attempts: int = 0


def _as_gateway_error(exc: BaseException, backend_id: str) -> GatewayError:
    """Classify an adapter exception into the gateway taxonomy."""
    if isinstance(exc, GatewayError):
        if exc.backend_id is None:
            exc.backend_id = backend_id
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return BackendTimeoutError("backend attempt timed out", backend_id=backend_id)
    return TransientNetworkError(f"backend call failed: {exc!r}", backend_id=backend_id)


class ResilienceWrapper:
    """Apply retry policy, circuit breaker and token bucket per backend."""

    def __init__(
        self,
        cfg: KopplerConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.cfg = cfg
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._health: dict[str, BackendHealth] = {}

    def health(self, backend_id: str) -> BackendHealth:
        """Return the health record of one backend, creating it on first use."""
        record = self._health.get(backend_id)
        if record is None:
            limit_cfg = self.cfg.rate_limit_for(backend_id)
            record = BackendHealth(
                backend_id=backend_id,
                limiter=TokenBucket(limit_cfg) if limit_cfg is not None else None,
            )
            self._health[backend_id] = record
        return record

    def circuit_status(self, backend_id: str) -> CircuitStatus:
        return self.health(backend_id).circuit.status

    def is_available(self, backend_id: str) -> bool:
        """Return false while the circuit would reject a call right now."""
        circuit = self.health(backend_id).circuit
        if circuit.status == CircuitStatus.CLOSED:
            return True
        if circuit.status == CircuitStatus.HALF_OPEN:
            return not circuit.trial_in_flight
        return circuit.cooldown_until is not None and self._clock() >= circuit.cooldown_until

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Health view of every backend seen so far."""
        now = self._clock()
        out: dict[str, dict[str, Any]] = {}
        for backend_id, record in sorted(self._health.items()):
            entry = record.circuit.to_dict(now)
            if record.limiter is not None:
                entry["rate_limit_available"] = record.limiter.available(now)
            out[backend_id] = entry
        return out

    def backoff_seconds(self, policy: RetryPolicy, attempt: int, error: GatewayError) -> float:
        """Delay before the attempt after `attempt`, honoring retry-after hints."""
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return error.retry_after
        base = policy.base_delay_ms * (policy.backoff_multiplier ** (attempt - 1))
        capped = min(base, policy.max_delay_ms)
        factor = 1.0 + policy.jitter * (2.0 * self._rng() - 1.0)
        return max(0.0, capped * factor / 1000.0)

    def _attempt_timeout(self, backend_id: str, timeout: float | None, deadline: float | None) -> float | None:
        """Per-attempt time budget from the backend timeout and request deadline."""
        if deadline is None:
            return timeout
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise BackendTimeoutError("request deadline exceeded", backend_id=backend_id)
        return remaining if timeout is None else min(timeout, remaining)

    def _checked_timeout(
        self,
        backend_id: str,
        timeout: float | None,
        deadline: float | None,
        attempt: int,
    ) -> float | None:
        """Attempt budget; an already expired deadline surfaces without touching the circuit."""
        try:
            return self._attempt_timeout(backend_id, timeout, deadline)
        except BackendTimeoutError as exc:
            exc.attempts = attempt - 1
            raise

    async def _admit(self, backend_id: str, attempts: int) -> bool:
        """Pass the circuit breaker; return true when this call is the half-open trial."""
        record = self.health(backend_id)
        async with record.lock:
            circuit = record.circuit
            now = self._clock()
            if circuit.status == CircuitStatus.OPEN:
                if circuit.cooldown_until is not None and now >= circuit.cooldown_until:
                    circuit.status = CircuitStatus.HALF_OPEN
                    circuit.trial_in_flight = True
                    LOG.info("circuit half-open backend=%s", backend_id, extra={"backend_id": backend_id})
                    return True
                retry_after = max(0.0, (circuit.cooldown_until or now) - now)
                raise CircuitOpenError(
                    f"circuit open, retry in {retry_after:.1f}s",
                    backend_id=backend_id,
                    attempts=attempts,
                    retry_after=retry_after,
                )
            if circuit.status == CircuitStatus.HALF_OPEN:
                if circuit.trial_in_flight:
                    raise CircuitOpenError(
                        "circuit half-open, trial call in flight",
                        backend_id=backend_id,
                        attempts=attempts,
                    )
                circuit.trial_in_flight = True
                return True
            return False

    async def _release_trial(self, backend_id: str) -> None:
        record = self.health(backend_id)
        async with record.lock:
            record.circuit.trial_in_flight = False

    async def _acquire_rate(self, backend_id: str, deadline: float | None, attempts: int) -> None:
        """Take one token from the backend bucket, waiting or rejecting per config."""
        record = self.health(backend_id)
        if record.limiter is None:
            return
        limit_cfg = record.limiter.cfg
        while True:
            async with record.lock:
                wait = record.limiter.try_acquire(self._clock())
            if wait <= 0:
                return
            if limit_cfg.on_limit == "reject":
                raise RateLimitError(
                    "local rate limit exceeded",
                    backend_id=backend_id,
                    attempts=attempts,
                    retry_after=wait,
                    local=True,
                )
            if deadline is not None and self._clock() + wait > deadline:
                raise RateLimitError(
                    "local rate limit wait exceeds request deadline",
                    backend_id=backend_id,
                    attempts=attempts,
                    retry_after=wait,
                    local=True,
                )
            LOG.debug("rate limit wait backend=%s wait=%.3fs", backend_id, wait)
            await self._sleep(wait)

    async def _record_success(self, backend_id: str) -> None:
        record = self.health(backend_id)
        async with record.lock:
            circuit = record.circuit
            if circuit.status != CircuitStatus.CLOSED:
                LOG.info("circuit closed backend=%s", backend_id, extra={"backend_id": backend_id})
            circuit.status = CircuitStatus.CLOSED
            circuit.consecutive_failures = 0
            circuit.first_failure_at = None
            circuit.cooldown_until = None
            circuit.trial_in_flight = False

    async def _record_failure(self, backend_id: str, error: GatewayError) -> None:
        """Count transient failures and open the circuit when the threshold is reached."""
        record = self.health(backend_id)
        breaker = self.cfg.circuit_breaker_for(backend_id)
        async with record.lock:
            circuit = record.circuit
            circuit.trial_in_flight = False
            if not error.retryable:
                return
            now = self._clock()
            if circuit.status == CircuitStatus.HALF_OPEN:
                circuit.status = CircuitStatus.OPEN
                circuit.consecutive_failures += 1
                circuit.cooldown_until = now + breaker.cooldown_seconds
                LOG.warning(
                    "circuit reopened after failed trial backend=%s cooldown=%.1fs error=%s",
                    backend_id,
                    breaker.cooldown_seconds,
                    error,
                    extra={"backend_id": backend_id},
                )
                return
            if circuit.first_failure_at is None or now - circuit.first_failure_at > breaker.window_seconds:
                circuit.consecutive_failures = 0
                circuit.first_failure_at = now
            circuit.consecutive_failures += 1
            if circuit.status == CircuitStatus.CLOSED and circuit.consecutive_failures >= breaker.failure_threshold:
                circuit.status = CircuitStatus.OPEN
                circuit.cooldown_until = now + breaker.cooldown_seconds
                LOG.warning(
                    "circuit opened backend=%s failures=%s cooldown=%.1fs",
                    backend_id,
                    circuit.consecutive_failures,
                    breaker.cooldown_seconds,
                    extra={"backend_id": backend_id},
                )

    async def _prepare_attempt(self, backend_id: str, deadline: float | None, attempt: int) -> bool:
        """Run circuit and rate checks ahead of one network attempt."""
        is_trial = await self._admit(backend_id, attempts=attempt - 1)
        try:
            await self._acquire_rate(backend_id, deadline, attempts=attempt - 1)
        except RateLimitError:
            if is_trial:
                await self._release_trial(backend_id)
            raise
        return is_trial

    async def _begin_attempt(
        self,
        backend_id: str,
        timeout: float | None,
        deadline: float | None,
        attempt: int,
        last_error: GatewayError | None,
    ) -> float | None:
        """Admit one attempt and return its time budget, measured after any rate limit wait.

        When this call's own failures opened the circuit, the last backend error
        is raised instead of the rejection.
        """
        self._checked_timeout(backend_id, timeout, deadline, attempt)
        try:
            is_trial = await self._prepare_attempt(backend_id, deadline, attempt)
        except CircuitOpenError as exc:
            if last_error is None:
                raise
            raise last_error from exc
        try:
            return self._checked_timeout(backend_id, timeout, deadline, attempt)
        except BackendTimeoutError:
            if is_trial:
                await self._release_trial(backend_id)
            raise

    async def _after_failure(
        self,
        backend_id: str,
        error: GatewayError,
        policy: RetryPolicy,
        attempt: int,
        deadline: float | None,
    ) -> None:
        """Record one failed attempt, then either back off or raise the final error."""
        await self._record_failure(backend_id, error)
        error.attempts = attempt
        if not (error.retryable and error.kind in policy.retryable) or attempt >= policy.max_attempts:
            LOG.warning(
                "backend call failed backend=%s attempts=%s error=%s",
                backend_id,
                attempt,
                error,
                extra={"backend_id": backend_id},
            )
            raise error
        delay = self.backoff_seconds(policy, attempt, error)
        if deadline is not None and self._clock() + delay >= deadline:
            LOG.warning(
                "backend retry abandoned, deadline too close backend=%s attempts=%s error=%s",
                backend_id,
                attempt,
                error,
                extra={"backend_id": backend_id},
            )
            raise error
        LOG.warning(
            "backend attempt failed backend=%s attempt=%s max_attempts=%s retry_in=%.3fs error=%s",
            backend_id,
            attempt,
            policy.max_attempts,
            delay,
            error,
            extra={"backend_id": backend_id},
        )
        if delay > 0:
            await self._sleep(delay)

    async def call(
        self,
        backend_id: str,
        operation: Callable[[], Awaitable[T]],
        *,
        policy: RetryPolicy | None = None,
        deadline: float | None = None,
        timeout: float | None = None,
    ) -> tuple[T, int]:
        """Run `operation` with retries; return its value and the attempts used."""
        active_policy = policy or self.cfg.retry_policy_for(backend_id)
        attempt = 0
        last_error: GatewayError | None = None
        while True:
            attempt += 1
            attempt_timeout = await self._begin_attempt(backend_id, timeout, deadline, attempt, last_error)
            try:
                if attempt_timeout is None:
                    value = await operation()
                else:
                    value = await asyncio.wait_for(operation(), timeout=attempt_timeout)
            except asyncio.CancelledError:
                await self._release_trial(backend_id)
                raise
            except Exception as exc:
                last_error = _as_gateway_error(exc, backend_id)
                await self._after_failure(backend_id, last_error, active_policy, attempt, deadline)
                continue
            await self._record_success(backend_id)
            return value, attempt

    async def stream(
        self,
        backend_id: str,
        open_stream: Callable[[], AsyncIterator[T]],
        *,
        policy: RetryPolicy | None = None,
        deadline: float | None = None,
        timeout: float | None = None,
        counter: AttemptCounter | None = None,
    ) -> AsyncGenerator[T, None]:
        """Yield items from a native stream; retries only happen before the first item.

        Every item, not just the first, must arrive within the backend timeout
        and before the request deadline.
        """
        active_policy = policy or self.cfg.retry_policy_for(backend_id)
        tally = counter if counter is not None else AttemptCounter()
        attempt = 0
        last_error: GatewayError | None = None
        while True:
            attempt += 1
            tally.attempts = attempt
            attempt_timeout = await self._begin_attempt(backend_id, timeout, deadline, attempt, last_error)
            iterator = open_stream()
            try:
                first = await asyncio.wait_for(anext(iterator), timeout=attempt_timeout)
            except StopAsyncIteration:
                await self._record_success(backend_id)
                return
            except asyncio.CancelledError:
                await _close_quietly(iterator)
                await self._release_trial(backend_id)
                raise
            except Exception as exc:
                await _close_quietly(iterator)
                last_error = _as_gateway_error(exc, backend_id)
                await self._after_failure(backend_id, last_error, active_policy, attempt, deadline)
                continue

            settled = False
            try:
                yield first
                while True:
                    item_timeout = self._attempt_timeout(backend_id, timeout, deadline)
                    try:
                        item = await asyncio.wait_for(anext(iterator), timeout=item_timeout)
                    except StopAsyncIteration:
                        break
                    yield item
            except Exception as exc:
                error = _as_gateway_error(exc, backend_id)
                error.attempts = attempt
                await self._record_failure(backend_id, error)
                settled = True
                LOG.warning(
                    "backend stream interrupted after partial output backend=%s error=%s",
                    backend_id,
                    error,
                    extra={"backend_id": backend_id},
                )
                if error is exc:
                    raise
                raise error from exc
            else:
                await self._record_success(backend_id)
                settled = True
            finally:
                await _close_quietly(iterator)
                if not settled:
                    await self._release_trial(backend_id)
            return


async def _close_quietly(iterator: AsyncIterator[Any]) -> None:
    """Best-effort close of an adapter stream."""
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        LOG.debug("closing backend stream failed", exc_info=True)
