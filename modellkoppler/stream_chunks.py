"""Helpers for SSE decoding/encoding and synthetic chunking."""

from __future__ import annotations

import json
import re
from typing import Any

SSE_DONE = "[DONE]"
_WHITESPACE = re.compile(r"\s")


def decode_sse_data_line(line: str) -> dict[str, Any] | str | None:
    """Decode one upstream SSE line.

    Returns the parsed JSON object, the literal `SSE_DONE` marker, or None for
    comments, blank lines and occasional non-JSON noise.
    """
    if not line or not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if data == SSE_DONE:
        return SSE_DONE
    try:
        value = json.loads(data)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def pick_primary_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return the primary choice (index 0 if present) from an upstream chunk."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    for choice in choices:
        if isinstance(choice, dict) and choice.get("index") == 0:
            return choice

    first = choices[0]
    return first if isinstance(first, dict) else None


def content_text(content_value: Any) -> str:
    """Flatten string or content-part list payloads to plain text."""
    if isinstance(content_value, str):
        return content_value
    if isinstance(content_value, list):
        parts: list[str] = []
        for item in content_value:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return ""


def split_for_synthetic_stream(text: str, chunk_size: int) -> list[str]:
    """Split complete text into chunks of about `chunk_size` characters.

    Breaks prefer whitespace (spaces, newlines, tabs) so words are not cut; a
    word longer than the chunk size is emitted whole. Concatenating the pieces
    yields `text` exactly.
    """
    if not text:
        return []
    size = max(1, chunk_size)
    pieces: list[str] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(length, start + size)
        if end < length:
            cut = -1
            for match in _WHITESPACE.finditer(text, start, end):
                cut = match.start()
            if cut > start:
                end = cut + 1
            else:
                following = _WHITESPACE.search(text, end)
                end = length if following is None else following.start() + 1
        pieces.append(text[start:end])
        start = end
    return pieces


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_event(event: str, payload: dict[str, Any] | None) -> bytes:
    """Encode one named SSE event."""
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_done() -> bytes:
    """Encode the terminal SSE marker."""
    return f"data: {SSE_DONE}\n\n".encode("utf-8")
