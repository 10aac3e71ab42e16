"""HTTP application for the modellkoppler gateway.

This module exposes the generation service over HTTP:
- `POST /v1/generate` returns one JSON result, or an SSE stream when the body
  carries `"stream": true`,
- `GET /healthz` reports per-backend circuit state.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, AsyncIterator
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .config import KopplerConfig, load_config
from .errors import (
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    GatewayError,
    RateLimitError,
    TimeoutError as BackendTimeoutError,
    TransientNetworkError,
)
from .json_helpers import to_bounded_json
from .logging_utils import setup_logging
from .models import GenerationRequest, StreamChunk
from .service import GenerationService
from .stream_chunks import sse_data, sse_done, sse_event
from .streaming import GenerationStream

LOG = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[GatewayError], int], ...] = (
    (ConfigurationError, 400),
    (AuthenticationError, 502),
    (RateLimitError, 429),
    (BackendTimeoutError, 504),
    (TransientNetworkError, 502),
    (CircuitOpenError, 503),
)


def _extract_bearer_token(request: Request) -> str | None:
    """Extract bearer token from Authorization header if present."""
    auth_header = request.headers.get("authorization")
    if not auth_header:
        return None
    parts = auth_header.strip().split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].lower(), parts[1].strip()
    if scheme != "bearer" or not token:
        return None
    return token


def _require_gateway_auth(request: Request, cfg: KopplerConfig) -> None:
    """Enforce gateway API key auth when configured."""
    required_key = cfg.service_api_key
    if not required_key:
        return
    if _extract_bearer_token(request) != required_key:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
    return parsed.hostname, parsed.port


def status_for_error(exc: GatewayError) -> int:
    """HTTP status for a gateway error."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def error_payload(exc: GatewayError) -> dict[str, Any]:
    """OpenAI-style error body."""
    body: dict[str, Any] = {
        "message": exc.message,
        "type": exc.kind,
        "backend_id": exc.backend_id,
        "attempts": exc.attempts,
    }
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        body["retry_after"] = retry_after
    records = getattr(exc, "records", None)
    if records:
        body["tool_calls"] = [record.to_dict() for record in records]
    return {"error": body}


def _error_response(exc: GatewayError) -> JSONResponse:
    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers["Retry-After"] = str(max(1, int(retry_after + 0.999)))
    return JSONResponse(error_payload(exc), status_code=status_for_error(exc), headers=headers)


def _parse_generation_request(payload: Any) -> tuple[GenerationRequest, bool]:
    """Split the transport-level `stream` flag from the canonical request."""
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="request body must be a JSON object")
    body = dict(payload)
    stream = bool(body.pop("stream", False))
    try:
        return GenerationRequest.model_validate(body), stream
    except ValidationError as exc:
        detail = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
        )
        raise HTTPException(status_code=400, detail=f"invalid request: {detail}") from exc


async def _sse_body(
    handle: GenerationStream,
    chunks: AsyncIterator[StreamChunk],
    first: StreamChunk,
) -> AsyncGenerator[bytes, None]:
    """Encode an already started generation as SSE events."""
    try:
        chunk: StreamChunk | None = first
        while chunk is not None:
            if chunk.final:
                break
            yield sse_data({"index": chunk.index, "content": chunk.content})
            chunk = await anext(chunks, None)
        outcome = handle.outcome
        if outcome is not None:
            yield sse_event(
                "result",
                {
                    "backend_id": outcome.backend_id,
                    "model": outcome.model,
                    "retry_count": outcome.retry_count,
                    "streamed": outcome.streamed,
                    "tool_calls": [record.to_dict() for record in outcome.tool_calls],
                },
            )
        usage = await handle.usage
        yield sse_event("usage", usage.to_dict())
        evaluation = await handle.evaluation
        if evaluation is not None:
            yield sse_event("evaluation", evaluation.to_dict())
    except GatewayError as exc:
        LOG.warning("generation stream failed error=%s", exc)
        yield sse_event("error", error_payload(exc))
    finally:
        await handle.aclose()
    yield sse_done()


def create_app(config_path: str | None = None, *, service: GenerationService | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    if service is None:
        cfg = load_config(config_path)
        setup_logging(cfg.logging)
        service = GenerationService(cfg)
    gateway = service

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        try:
            yield
        finally:
            await gateway.close()

    app = FastAPI(title="modellkoppler", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(_request: Request, exc: GatewayError) -> JSONResponse:
        return _error_response(exc)

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return service and per-backend health status."""
        return JSONResponse(
            {
                "service": "modellkoppler",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **gateway.health(),
            }
        )

    @app.post("/v1/generate")
    async def v1_generate(request: Request):
        """Run one generation; SSE when the body asks for a stream."""
        _require_gateway_auth(request, gateway.cfg)
        payload = await request.json()
        client_host = getattr(getattr(request, "client", None), "host", None)
        LOG.debug("incoming generate request client=%s payload=%s", client_host, to_bounded_json(payload))
        generation, stream = _parse_generation_request(payload)

        if not stream:
            result = await gateway.generate(generation)
            return JSONResponse(result.to_dict())

        handle = gateway.stream(generation)
        try:
            # Pull the first chunk here so selection and connect errors still map to a status code.
            chunks = aiter(handle)
            first = await anext(chunks)
        except GatewayError:
            await handle.aclose()
            raise
        return StreamingResponse(_sse_body(handle, chunks, first), media_type="text/event-stream")

    return app


def main() -> None:
    """Entry point: load configuration from `MODELLKOPPLER_CONFIG` and run uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    try:
        cfg = load_config()
    except ValidationError as exc:
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    setup_logging(cfg.logging)
    try:
        app = create_app(service=GenerationService(cfg))
    except GatewayError as exc:
        fail(str(exc))

    try:
        host, port = _service_bind_addr(cfg.service_base_url)
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
