from __future__ import annotations

import asyncio
import os
from typing import Any

from openai import OpenAI

from waypoint.errors import ReviewerError
from waypoint.models import ReviewerOpinion
from waypoint.reviewers.base import ReviewerBackend, extract_payload, opinion_from_payload
from waypoint.reviewers.command import REVIEW_PROMPT, build_review_input


class OpenAIReviewer(ReviewerBackend):
    """Reviewer that calls the OpenAI Responses API through the official SDK."""

    def __init__(
        self,
        name: str,
        *,
        model: str = "gpt-5",
        client: Any | None = None,
        prompt: str = REVIEW_PROMPT,
    ) -> None:
        self.name = name
        self.model = model
        self.prompt = prompt
        self._client = client

    def available(self) -> bool:
        return self._client is not None or bool(os.environ.get("OPENAI_API_KEY"))

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def review(self, artifact: str, context: dict[str, Any]) -> ReviewerOpinion:
        user_input = build_review_input(artifact, context)

        def _request() -> Any:
            return self._get_client().responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": self.prompt},
                    {"role": "user", "content": user_input},
                ],
            )

        try:
            response = await asyncio.to_thread(_request)
        except Exception as exc:
            raise ReviewerError(
                f"OpenAI review with {self.model} failed: {exc}", reviewer=self.name
            ) from exc

        payload = extract_payload(self._extract_text(response))
        if payload is None:
            raise ReviewerError(
                f"Reviewer {self.name} produced no JSON opinion.", reviewer=self.name
            )
        return opinion_from_payload(payload, self.name)
