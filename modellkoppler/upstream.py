"""Adapter for upstream OpenAI-compatible chat completion APIs."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncGenerator

import httpx

from .adapters import BackendAdapter
from .config import BackendConfig
from .errors import (
    AuthenticationError,
    ConfigurationError,
    GatewayError,
    RateLimitError,
    TimeoutError as BackendTimeoutError,
    TransientNetworkError,
)
from .json_helpers import to_bounded_json
from .models import BackendChunk, BackendRequest, BackendResult, ToolCallRequest
from .stream_chunks import SSE_DONE, content_text, decode_sse_data_line, pick_primary_choice

LOG = logging.getLogger(__name__)

_CHAT_PATH = "/v1/chat/completions"


def _is_incomplete_payload_error(exc: Exception) -> bool:
    """Detect truncated/incomplete upstream response payload errors."""
    lowered = str(exc).lower()
    return (
        "response payload is not completed" in lowered
        or "transferencodingerror" in lowered
        or "not enough data to satisfy transfer length header" in lowered
    )


def _retry_after_seconds(response: httpx.Response | None) -> float | None:
    """Read a numeric `Retry-After` / `retry-after-ms` hint from a response."""
    if response is None:
        return None
    retry_after_ms = response.headers.get("retry-after-ms")
    if retry_after_ms is not None:
        try:
            return max(0.0, float(retry_after_ms) / 1000.0)
        except ValueError:
            pass
    retry_after = response.headers.get("retry-after")
    if retry_after is not None:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            return None
    return None


def map_upstream_error(exc: Exception, backend_id: str) -> GatewayError:
    """Translate httpx and payload failures into the gateway error taxonomy."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return BackendTimeoutError(f"upstream timed out: {exc}", backend_id=backend_id)
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        status = response.status_code if response is not None else None
        if status in {401, 403}:
            return AuthenticationError(f"upstream rejected credentials (HTTP {status})", backend_id=backend_id)
        if status == 429:
            return RateLimitError(
                "upstream rate limit exceeded (HTTP 429)",
                backend_id=backend_id,
                retry_after=_retry_after_seconds(response),
            )
        if status in {408, 504}:
            return BackendTimeoutError(f"upstream timed out (HTTP {status})", backend_id=backend_id)
        if status is not None and status >= 500:
            return TransientNetworkError(f"upstream server error (HTTP {status})", backend_id=backend_id)
        return ConfigurationError(f"upstream rejected request (HTTP {status})", backend_id=backend_id)
    if isinstance(exc, httpx.TransportError) or _is_incomplete_payload_error(exc):
        return TransientNetworkError(f"connection to upstream failed: {exc}", backend_id=backend_id)
    if isinstance(exc, (json.JSONDecodeError, ValueError)):
        return TransientNetworkError(f"upstream returned malformed payload: {exc}", backend_id=backend_id)
    return TransientNetworkError(f"upstream call failed: {exc}", backend_id=backend_id)


class OpenAICompatibleAdapter(BackendAdapter):
    """Thin async HTTP adapter for OpenAI-compatible model endpoints."""

    def __init__(self, cfg: BackendConfig) -> None:
        """Create an adapter from one backend configuration."""
        if not cfg.base_url:
            raise ConfigurationError("base_url is required", backend_id=cfg.backend_id)
        self.cfg = cfg
        self.backend_id = cfg.backend_id
        self._base_url = cfg.base_url.rstrip("/")
        self._timeout = httpx.Timeout(connect=10.0, read=cfg.timeout_seconds, write=120.0, pool=10.0)
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        """Build authorization headers for upstream calls."""
        headers = {"Content-Type": "application/json"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        return headers

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh upstream HTTP client instance for one stream."""
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    def _payload(self, request: BackendRequest, *, stream: bool) -> dict[str, Any]:
        """Build the chat completion payload for one request."""
        payload: dict[str, Any] = {
            "model": request.model or self.cfg.model,
            "messages": request.messages,
            "stream": stream,
        }
        if not payload["model"]:
            raise ConfigurationError("no model configured", backend_id=self.backend_id)
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.tools:
            payload["tools"] = request.tools
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _tool_calls(message: dict[str, Any]) -> list[ToolCallRequest]:
        """Extract requested tool calls from an assistant message."""
        calls: list[ToolCallRequest] = []
        for index, tc in enumerate(message.get("tool_calls") or []):
            if not isinstance(tc, dict):
                continue
            fn = tc.get("function") or {}
            name = str(fn.get("name") or "").strip()
            if not name:
                continue
            arguments = fn.get("arguments")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments or {}, ensure_ascii=False)
            calls.append(ToolCallRequest(call_id=str(tc.get("id") or f"call_{index}"), name=name, arguments=arguments))
        return calls

    async def generate(self, request: BackendRequest) -> BackendResult:
        """Run one non-streaming upstream chat completion."""
        payload = self._payload(request, stream=False)
        LOG.debug(
            "forwarding upstream request backend=%s method=POST path=%s stream=false payload=%s",
            self.backend_id,
            _CHAT_PATH,
            to_bounded_json(payload),
        )
        try:
            response = await self._client.post(_CHAT_PATH, headers=self._headers(), json=payload)
            response.raise_for_status()
            body = response.json()
        except Exception as exc:
            raise map_upstream_error(exc, self.backend_id) from exc

        if not isinstance(body, dict):
            raise TransientNetworkError("upstream returned non-object body", backend_id=self.backend_id)
        choice = pick_primary_choice(body) or {}
        message = choice.get("message") or {}
        return BackendResult(
            content=content_text(message.get("content")),
            model=body.get("model") or payload["model"],
            usage=body.get("usage") if isinstance(body.get("usage"), dict) else None,
            tool_calls=self._tool_calls(message),
            finish_reason=choice.get("finish_reason"),
            raw=body,
        )

    async def stream(self, request: BackendRequest) -> AsyncGenerator[BackendChunk, None]:
        """Run one streaming upstream chat completion and yield content deltas."""
        payload = self._payload(request, stream=True)
        started = time.monotonic()
        LOG.debug(
            "upstream stream start backend=%s method=POST path=%s payload=%s",
            self.backend_id,
            _CHAT_PATH,
            to_bounded_json(payload),
        )
        stream_client = self._build_client()
        response: httpx.Response | None = None
        chunk_count = 0
        try:
            headers = self._headers()
            headers["Connection"] = "close"
            response = await stream_client.send(
                stream_client.build_request("POST", _CHAT_PATH, headers=headers, json=payload),
                stream=True,
            )
            response.raise_for_status()
            async for line in response.aiter_lines():
                decoded = decode_sse_data_line(line)
                if decoded is None:
                    continue
                if decoded == SSE_DONE:
                    LOG.debug(
                        "upstream stream done marker backend=%s elapsed=%.3fs chunks=%s",
                        self.backend_id,
                        time.monotonic() - started,
                        chunk_count,
                    )
                    return
                if not isinstance(decoded, dict):
                    continue
                choice = pick_primary_choice(decoded) or {}
                delta = choice.get("delta") or {}
                usage = decoded.get("usage") if isinstance(decoded.get("usage"), dict) else None
                text = content_text(delta.get("content"))
                if not text and usage is None and not choice.get("finish_reason"):
                    continue
                chunk_count += 1
                yield BackendChunk(
                    content=text,
                    model=decoded.get("model"),
                    usage=usage,
                    finish_reason=choice.get("finish_reason"),
                )
        except asyncio.CancelledError:
            LOG.debug(
                "upstream stream cancelled backend=%s elapsed=%.3fs chunks=%s",
                self.backend_id,
                time.monotonic() - started,
                chunk_count,
            )
            raise
        except GatewayError:
            raise
        except Exception as exc:
            raise map_upstream_error(exc, self.backend_id) from exc
        finally:
            cleanup_cancelled = False
            if response is not None:
                try:
                    await asyncio.shield(response.aclose())
                except asyncio.CancelledError:
                    cleanup_cancelled = True
                except Exception:
                    LOG.debug("upstream response close failed backend=%s", self.backend_id, exc_info=True)
            try:
                await asyncio.shield(stream_client.aclose())
            except asyncio.CancelledError:
                cleanup_cancelled = True
            except Exception:
                LOG.debug("upstream client close failed backend=%s", self.backend_id, exc_info=True)
            LOG.debug(
                "upstream stream closed backend=%s elapsed=%.3fs chunks=%s",
                self.backend_id,
                time.monotonic() - started,
                chunk_count,
            )
            if cleanup_cancelled:
                raise asyncio.CancelledError


def build_adapter(cfg: BackendConfig) -> BackendAdapter:
    """Instantiate the built-in adapter for one configured backend."""
    if cfg.kind == "openai_compatible":
        return OpenAICompatibleAdapter(cfg)
    raise ConfigurationError(
        "external backends must be supplied as adapter objects",
        backend_id=cfg.backend_id,
    )
