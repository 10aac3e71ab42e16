"""Best-effort scoring of generated content through a second backend call."""

from __future__ import annotations

import logging
import time

from .config import EvaluationConfig, RetryPolicy
from .errors import EvaluationError, GatewayError
from .json_helpers import extract_json_object
from .models import BackendRequest, EvaluationRecord
from .resilience import ResilienceWrapper

LOG = logging.getLogger(__name__)

_EVALUATION_SYSTEM = (
    "You are a strict reviewer. Rate the assistant response to the user prompt "
    "on a scale from 0 to 10 for correctness, relevance and completeness. "
    'Reply with one JSON object only: {"score": <number>, "reasoning": "<one sentence>"}.'
)
_MAX_CONTENT_CHARS = 12000


def build_evaluation_messages(prompt: str, content: str, criteria: str | None = None) -> list[dict[str, str]]:
    """Messages sent to the evaluator backend."""
    system = _EVALUATION_SYSTEM
    if criteria:
        system = f"{system}\nAdditional criteria: {criteria}"
    return [
        {"role": "system", "content": system},
        {
            "role": "user",
            "content": f"User prompt:\n{prompt}\n\nAssistant response:\n{content[:_MAX_CONTENT_CHARS]}",
        },
    ]


def parse_evaluation(text: str) -> tuple[float, str]:
    """Extract a 0-10 score and reasoning from evaluator output."""
    data = extract_json_object(text)
    if data is None:
        raise EvaluationError("evaluator returned no JSON object")
    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise EvaluationError("evaluator score missing or not numeric")
    reasoning = data.get("reasoning")
    return min(10.0, max(0.0, float(score))), str(reasoning or "").strip()


class EvaluationHook:
    """Score completed content with a small retry budget; never raises."""

    def __init__(self, cfg: EvaluationConfig, resilience: ResilienceWrapper) -> None:
        self.cfg = cfg
        self.resilience = resilience

    def _policy(self, backend_id: str) -> RetryPolicy:
        base = self.resilience.cfg.retry_policy_for(backend_id)
        return base.model_copy(update={"max_attempts": self.cfg.max_attempts})

    async def evaluate(
        self,
        *,
        adapter: object,
        backend_id: str,
        prompt: str,
        content: str,
        criteria: str | None = None,
        timeout: float | None = None,
    ) -> EvaluationRecord | None:
        """Return an evaluation record, or None when evaluation failed for any reason."""
        started = time.monotonic()
        request = BackendRequest(
            messages=build_evaluation_messages(prompt, content, criteria),
            model=self.cfg.model,
            temperature=self.cfg.temperature,
            max_tokens=self.cfg.max_tokens,
        )
        try:
            result, attempts = await self.resilience.call(
                backend_id,
                lambda: adapter.generate(request),  # type: ignore[attr-defined]
                policy=self._policy(backend_id),
                timeout=timeout,
            )
            score, reasoning = parse_evaluation(result.content)
        except GatewayError as exc:
            LOG.warning("evaluation omitted backend=%s error=%s", backend_id, exc)
            return None
        except Exception as exc:
            LOG.warning("evaluation omitted backend=%s unexpected error=%r", backend_id, exc)
            return None

        record = EvaluationRecord(
            score=score,
            reasoning=reasoning,
            backend_id=backend_id,
            model=result.model,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )
        LOG.info("evaluation finished backend=%s score=%.1f attempts=%s", backend_id, score, attempts)
        return record
