"""JSON/text helpers for bounded logging output and tool-call digests."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging."""
    try:
        raw = json.dumps(payload, ensure_ascii=False, default=str)
    except Exception:
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def argument_digest(arguments: Any) -> str:
    """Stable short digest of tool arguments (key order independent)."""
    try:
        canonical = json.dumps(arguments, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    except Exception:
        canonical = repr(arguments)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first JSON object embedded in model output, if any."""
    if not text:
        return None
    stripped = text.strip()
    candidates = [stripped]
    match = _JSON_OBJECT_RE.search(stripped)
    if match and match.group(0) != stripped:
        candidates.append(match.group(0))
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None
