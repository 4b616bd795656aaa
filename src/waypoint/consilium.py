"""Multi-reviewer consensus for the review stages.

A consilium asks every available reviewer backend for an opinion in
parallel, drops the ones that fail or time out, and folds the rest into one
``ConsiliumResult``. Folding is a pure function so identical opinions always
give an identical result.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from collections.abc import Callable, Sequence
from typing import Any

from waypoint.errors import AllReviewersFailedError, ReviewerError, StageExecutionError
from waypoint.models import ConsiliumResult, CrossAgreedIssue, ReviewerOpinion, Verdict
from waypoint.reviewers.base import ReviewerBackend
from waypoint.runner import StageContext

logger = logging.getLogger(__name__)

ConsiliumEventHook = Callable[[dict[str, Any]], None]

SYSTEM_REVIEWER = "system"
ALL_FAILED_ISSUE = "all review models failed"
ALL_FAILED_FEEDBACK = "No reviewer produced an opinion. Manual review required."
DEFAULT_REVIEWER_TIMEOUT_SECONDS = 120.0
DEFAULT_ISSUE_PREFIX_LENGTH = 50
MAJORITY = 2


def _round_half_up_mean(values: Sequence[int]) -> int:
    total = sum(values)
    count = len(values)
    return (2 * total + count) // (2 * count)


def _unified_feedback(opinions: Sequence[ReviewerOpinion]) -> str | None:
    suggestions = [item for opinion in opinions for item in opinion.suggestions]
    return "\n".join(suggestions) if suggestions else None


def _majority_verdict(opinions: Sequence[ReviewerOpinion]) -> Verdict:
    rejected = sum(1 for opinion in opinions if opinion.verdict == Verdict.REJECTED)
    approved = sum(1 for opinion in opinions if opinion.verdict == Verdict.APPROVED)
    if rejected >= MAJORITY:
        return Verdict.REJECTED
    if approved >= MAJORITY:
        return Verdict.APPROVED
    return Verdict.NEEDS_REVISION


def _cross_agreed(
    opinions: Sequence[ReviewerOpinion], prefix_length: int
) -> list[CrossAgreedIssue]:
    display: dict[str, str] = {}
    raised_by: dict[str, list[str]] = {}
    for opinion in opinions:
        for weakness in opinion.weaknesses:
            key = weakness.strip().casefold()[:prefix_length]
            if not key:
                continue
            display.setdefault(key, weakness.strip())
            reviewers = raised_by.setdefault(key, [])
            if opinion.reviewer_id not in reviewers:
                reviewers.append(opinion.reviewer_id)
    return [
        CrossAgreedIssue(issue=display[key], agreed_by=list(reviewers))
        for key, reviewers in raised_by.items()
        if len(reviewers) >= MAJORITY
    ]


def synthesize(
    opinions: Sequence[ReviewerOpinion],
    *,
    issue_prefix_length: int = DEFAULT_ISSUE_PREFIX_LENGTH,
) -> ConsiliumResult:
    if not opinions:
        return ConsiliumResult(
            final_verdict=Verdict.NEEDS_REVISION,
            consensus_score=0,
            per_reviewer_scores={},
            cross_agreed_issues=[
                CrossAgreedIssue(issue=ALL_FAILED_ISSUE, agreed_by=[SYSTEM_REVIEWER])
            ],
            unified_feedback=ALL_FAILED_FEEDBACK,
        )

    scores = {opinion.reviewer_id: opinion.score for opinion in opinions}

    if len(opinions) == 1:
        only = opinions[0]
        return ConsiliumResult(
            final_verdict=only.verdict,
            consensus_score=only.score,
            per_reviewer_scores=scores,
            cross_agreed_issues=[
                CrossAgreedIssue(issue=weakness, agreed_by=[only.reviewer_id])
                for weakness in only.weaknesses
            ],
            unified_feedback=_unified_feedback(opinions),
        )

    return ConsiliumResult(
        final_verdict=_majority_verdict(opinions),
        consensus_score=_round_half_up_mean([opinion.score for opinion in opinions]),
        per_reviewer_scores=scores,
        cross_agreed_issues=_cross_agreed(opinions, issue_prefix_length),
        unified_feedback=_unified_feedback(opinions),
    )


class Consilium:
    def __init__(
        self,
        reviewers: Sequence[ReviewerBackend],
        *,
        timeout_seconds: float = DEFAULT_REVIEWER_TIMEOUT_SECONDS,
        issue_prefix_length: int = DEFAULT_ISSUE_PREFIX_LENGTH,
        event_hook: ConsiliumEventHook | None = None,
    ) -> None:
        self.reviewers = list(reviewers)
        self.timeout_seconds = timeout_seconds
        self.issue_prefix_length = issue_prefix_length
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def available_reviewers(self) -> list[ReviewerBackend]:
        selected: list[ReviewerBackend] = []
        seen: set[str] = set()
        for reviewer in self.reviewers:
            if reviewer.name in seen or not reviewer.available():
                continue
            seen.add(reviewer.name)
            selected.append(reviewer)
        return selected

    async def _ask(
        self, reviewer: ReviewerBackend, artifact: str, context: dict[str, Any]
    ) -> ReviewerOpinion | None:
        try:
            opinion = await asyncio.wait_for(
                reviewer.review(artifact, context), timeout=self.timeout_seconds
            )
        except TimeoutError:
            error = f"timed out after {self.timeout_seconds}s"
        except ReviewerError as exc:
            error = str(exc)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
        else:
            if not isinstance(opinion, ReviewerOpinion):
                error = f"returned {type(opinion).__name__}, expected ReviewerOpinion"
            else:
                return dataclasses.replace(opinion, reviewer_id=reviewer.name)

        logger.warning("Reviewer %s dropped: %s", reviewer.name, error)
        self._emit({"event": "reviewer_failed", "reviewer": reviewer.name, "error": error})
        return None

    async def collect(
        self, artifact: str, context: dict[str, Any] | None = None
    ) -> list[ReviewerOpinion]:
        reviewers = self.available_reviewers()
        results = await asyncio.gather(
            *(self._ask(reviewer, artifact, dict(context or {})) for reviewer in reviewers)
        )
        opinions = [opinion for opinion in results if opinion is not None]
        if not opinions:
            raise AllReviewersFailedError(
                f"No opinion from {len(reviewers)} available reviewer(s)."
            )
        return opinions

    async def review(
        self, artifact: str, context: dict[str, Any] | None = None
    ) -> ConsiliumResult:
        try:
            opinions = await self.collect(artifact, context)
        except AllReviewersFailedError as exc:
            logger.warning("Consilium degraded: %s", exc)
            opinions = []
        return synthesize(opinions, issue_prefix_length=self.issue_prefix_length)


class ReviewStage:
    """Stage function that reviews an accepted upstream output with a consilium.

    ``artifact_key`` selects one field of the upstream output as the artifact;
    without it the whole output is reviewed as JSON. The review context holds
    the run input and, when ``context_stage`` is set, that stage's output.
    """

    def __init__(
        self,
        consilium: Consilium,
        artifact_stage: str,
        *,
        artifact_key: str | None = None,
        context_stage: str | None = None,
    ) -> None:
        self.consilium = consilium
        self.artifact_stage = artifact_stage
        self.artifact_key = artifact_key
        self.context_stage = context_stage

    def artifact_for(self, ctx: StageContext) -> str:
        upstream = ctx.state.stage_outputs.get(self.artifact_stage)
        if upstream is None:
            raise StageExecutionError(
                f"No accepted output from stage {self.artifact_stage} to review",
                stage=str(ctx.stage),
                retriable=False,
            )
        if self.artifact_key is None:
            return json.dumps(upstream, ensure_ascii=False, indent=2, sort_keys=True)
        value = upstream.get(self.artifact_key)
        if isinstance(value, str):
            return value
        if value is None:
            raise StageExecutionError(
                f"Stage {self.artifact_stage} output has no '{self.artifact_key}' field",
                stage=str(ctx.stage),
                retriable=False,
            )
        return json.dumps(value, ensure_ascii=False, indent=2, sort_keys=True)

    async def __call__(self, ctx: StageContext) -> dict[str, Any]:
        artifact = self.artifact_for(ctx)
        context: dict[str, Any] = {"input": dict(ctx.input)}
        if self.context_stage is not None:
            context[self.context_stage] = ctx.state.stage_outputs.get(self.context_stage)
        result = await self.consilium.review(artifact, context)
        return result.to_dict()
