from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path
from typing import Any

from waypoint.errors import ReviewerError
from waypoint.models import ReviewerOpinion
from waypoint.reviewers.base import ReviewerBackend, extract_payload, opinion_from_payload

REVIEW_PROMPT = """
You are an independent reviewer of a research or review artifact.
Judge completeness, accuracy, sourcing, actionability and structure.
Reply with one JSON object and nothing else:
{"score": 0-100, "verdict": "approved" | "needs_revision" | "rejected",
 "category_scores": {"completeness": 0-100, "accuracy": 0-100, "sources": 0-100,
                     "actionability": 0-100, "structure": 0-100},
 "strengths": [...], "weaknesses": [...], "suggestions": [...]}
""".strip()


def build_review_input(artifact: str, context: dict[str, Any]) -> str:
    sections = ["Artifact:", artifact]
    if context:
        sections.extend(["", "Context JSON:", json.dumps(context, ensure_ascii=False, indent=2)])
    return "\n".join(sections)


class CommandReviewer(ReviewerBackend):
    """Reviewer backed by an agent CLI that reads a prompt on stdin and prints JSON."""

    def __init__(
        self,
        name: str,
        command: list[str],
        *,
        working_directory: Path | None = None,
        prompt: str = REVIEW_PROMPT,
    ) -> None:
        if not command:
            raise ValueError("CommandReviewer requires a non-empty command.")
        self.name = name
        self.command = list(command)
        self.working_directory = working_directory
        self.prompt = prompt

    def available(self) -> bool:
        return shutil.which(self.command[0]) is not None

    def build_input(self, artifact: str, context: dict[str, Any]) -> str:
        return f"{self.prompt}\n\n{build_review_input(artifact, context)}"

    async def review(self, artifact: str, context: dict[str, Any]) -> ReviewerOpinion:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ReviewerError(
                f"Reviewer binary not found: {self.command[0]}", reviewer=self.name
            ) from exc

        try:
            stdout, stderr = await process.communicate(
                self.build_input(artifact, context).encode("utf-8")
            )
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await asyncio.shield(process.wait())
            raise

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise ReviewerError(
                f"Reviewer {self.name} exited with code {process.returncode}: {detail}",
                reviewer=self.name,
            )

        payload = extract_payload(stdout.decode("utf-8", errors="replace"))
        if payload is None:
            raise ReviewerError(
                f"Reviewer {self.name} produced no JSON opinion.", reviewer=self.name
            )
        return opinion_from_payload(payload, self.name)
