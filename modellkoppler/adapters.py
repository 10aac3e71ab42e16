"""Backend adapter contract consumed by the gateway.

An adapter performs exactly one vendor call per `generate` invocation and maps
vendor failures onto `modellkoppler.errors`. Adapters that can deliver output
incrementally additionally define `stream`; adapters without it are delivered
through synthetic streaming.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from .models import BackendChunk, BackendRequest, BackendResult


class BackendAdapter(ABC):
    """Abstract adapter for one generation backend.

    Subclasses may add::

        def stream(self, request: BackendRequest) -> AsyncIterator[BackendChunk]: ...

    as an async generator to opt into native streaming.
    """

    backend_id: str = "backend"

    @abstractmethod
    async def generate(self, request: BackendRequest) -> BackendResult:
        """Run one complete, non-streaming call."""

    async def close(self) -> None:
        """Release transport resources."""
        return None


def supports_streaming(adapter: object) -> bool:
    """Return true when the adapter exposes a native incremental channel."""
    return callable(getattr(adapter, "stream", None))


def open_stream(adapter: object, request: BackendRequest) -> AsyncIterator[BackendChunk]:
    """Call the adapter's native stream method."""
    stream = getattr(adapter, "stream")
    return stream(request)
