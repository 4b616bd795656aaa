from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from waypoint.errors import ReviewerError
from waypoint.models import ReviewerOpinion, Verdict


class ReviewerBackend(ABC):
    """One independent reviewer in a consilium."""

    name: str = "reviewer"

    def available(self) -> bool:
        """Static capability check. Must not call the backend."""
        return True

    @abstractmethod
    async def review(self, artifact: str, context: dict[str, Any]) -> ReviewerOpinion:
        """Review ``artifact`` and return a structured opinion."""


def _string_list(payload: Mapping[str, Any], key: str, reviewer_id: str) -> list[str]:
    value = payload.get(key, [])
    if not isinstance(value, list):
        raise ReviewerError(f"Reviewer field '{key}' must be a list.", reviewer=reviewer_id)
    return [str(item).strip() for item in value if str(item).strip()]


def opinion_from_payload(payload: Any, reviewer_id: str) -> ReviewerOpinion:
    """Validate a raw reviewer response and build a ReviewerOpinion from it."""
    if not isinstance(payload, Mapping):
        raise ReviewerError("Reviewer response is not an object.", reviewer=reviewer_id)

    raw_score = payload.get("score")
    if isinstance(raw_score, bool) or not isinstance(raw_score, (int, float)):
        raise ReviewerError("Reviewer score must be a number.", reviewer=reviewer_id)
    if not 0 <= raw_score <= 100:
        raise ReviewerError(f"Reviewer score {raw_score} outside 0-100.", reviewer=reviewer_id)

    raw_verdict = str(payload.get("verdict", "")).strip().lower()
    try:
        verdict = Verdict(raw_verdict)
    except ValueError as exc:
        raise ReviewerError(
            f"Unknown reviewer verdict '{raw_verdict}'.", reviewer=reviewer_id
        ) from exc

    raw_categories = payload.get("category_scores", payload.get("scores", {}))
    if not isinstance(raw_categories, Mapping):
        raise ReviewerError("Reviewer category scores must be an object.", reviewer=reviewer_id)
    category_scores: dict[str, int] = {}
    for key, value in raw_categories.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        category_scores[str(key)] = int(round(value))

    return ReviewerOpinion(
        reviewer_id=reviewer_id,
        score=int(round(raw_score)),
        verdict=verdict,
        category_scores=category_scores,
        strengths=_string_list(payload, "strengths", reviewer_id),
        weaknesses=_string_list(payload, "weaknesses", reviewer_id),
        suggestions=_string_list(payload, "suggestions", reviewer_id),
    )


FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def _candidate_payloads(raw_output: str) -> list[Any]:
    candidates: list[Any] = []
    text = raw_output.strip()
    if not text:
        return candidates
    try:
        candidates.append(json.loads(text))
    except json.JSONDecodeError:
        pass
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            candidates.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    for match in FENCED_JSON_PATTERN.finditer(text):
        try:
            candidates.append(json.loads(match.group(1)))
        except json.JSONDecodeError:
            continue
    return candidates


def extract_payload(raw_output: str) -> dict[str, Any] | None:
    """Return the last JSON object carrying a ``verdict`` found in model output."""
    found: dict[str, Any] | None = None
    for candidate in _candidate_payloads(raw_output):
        if not isinstance(candidate, dict):
            continue
        if "verdict" in candidate:
            found = candidate
            continue
        # Agent CLIs wrap the model reply in an envelope such as {"result": "..."}.
        for key in ("result", "content", "text", "output_text"):
            inner = candidate.get(key)
            if isinstance(inner, str):
                nested = extract_payload(inner)
                if nested is not None:
                    found = nested
    return found
