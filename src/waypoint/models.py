from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from waypoint.pipelines import DONE, PipelineKind, first_stage

HISTORY_LIMIT = 200


def utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat()


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class RunStatus(StrEnum):
    RUNNING = "running"
    PAUSED_FOR_INPUT = "paused_for_input"
    COMPLETED = "completed"
    FAILED = "failed"


class LivenessStatus(StrEnum):
    PENDING = "pending"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED_FOR_INPUT = "paused_for_input"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


class Verdict(StrEnum):
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class GateResult:
    passed: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> GateResult:
        return cls(passed=True)

    @classmethod
    def fail(cls, reason: str) -> GateResult:
        return cls(passed=False, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"passed": self.passed}
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True, slots=True)
class ReviewerOpinion:
    reviewer_id: str
    score: int
    verdict: Verdict
    category_scores: dict[str, int] = field(default_factory=dict)
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewer_id": self.reviewer_id,
            "score": self.score,
            "verdict": str(self.verdict),
            "category_scores": dict(self.category_scores),
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "suggestions": list(self.suggestions),
        }


@dataclass(frozen=True, slots=True)
class CrossAgreedIssue:
    issue: str
    agreed_by: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"issue": self.issue, "agreed_by": list(self.agreed_by)}


@dataclass(frozen=True, slots=True)
class ConsiliumResult:
    final_verdict: Verdict
    consensus_score: int
    per_reviewer_scores: dict[str, int] = field(default_factory=dict)
    cross_agreed_issues: list[CrossAgreedIssue] = field(default_factory=list)
    unified_feedback: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "final_verdict": str(self.final_verdict),
            "consensus_score": self.consensus_score,
            "per_reviewer_scores": dict(self.per_reviewer_scores),
            "cross_agreed_issues": [issue.to_dict() for issue in self.cross_agreed_issues],
        }
        if self.unified_feedback is not None:
            payload["unified_feedback"] = self.unified_feedback
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ConsiliumResult:
        return cls(
            final_verdict=Verdict(payload["final_verdict"]),
            consensus_score=int(payload["consensus_score"]),
            per_reviewer_scores={
                str(key): int(value)
                for key, value in dict(payload.get("per_reviewer_scores", {})).items()
            },
            cross_agreed_issues=[
                CrossAgreedIssue(issue=str(item["issue"]), agreed_by=list(item["agreed_by"]))
                for item in payload.get("cross_agreed_issues", [])
            ],
            unified_feedback=payload.get("unified_feedback"),
        )


@dataclass(slots=True)
class LivenessRecord:
    run_id: str
    status: str
    last_update_at: str
    error: str | None = None
    failed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "last_update_at": self.last_update_at,
            "error": self.error,
            "failed_at": self.failed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LivenessRecord:
        return cls(
            run_id=str(payload["run_id"]),
            status=str(payload.get("status", "")),
            last_update_at=str(payload.get("last_update_at") or ""),
            error=payload.get("error"),
            failed_at=payload.get("failed_at"),
        )


@dataclass(slots=True)
class PipelineState:
    run_id: str
    pipeline_kind: PipelineKind
    current_stage: str
    status: RunStatus = RunStatus.RUNNING
    stage_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    stage_attempts: dict[str, int] = field(default_factory=dict)
    max_stage_attempts: int = 3
    last_checkpoint_at: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=lambda: to_iso(utcnow()))
    updated_at: str = field(default_factory=lambda: to_iso(utcnow()))
    error: str | None = None
    failed_at: str | None = None
    pending_questions: Any = None
    resume_command: str | None = None
    answers: dict[str, Any] = field(default_factory=dict)
    history: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        kind: PipelineKind | str,
        payload: dict[str, Any] | None = None,
        *,
        max_stage_attempts: int = 3,
        now: datetime | None = None,
    ) -> PipelineState:
        kind = PipelineKind(kind)
        moment = now or utcnow()
        stamp = to_iso(moment)
        run_id = f"{kind}-{moment.strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        return cls(
            run_id=run_id,
            pipeline_kind=kind,
            current_stage=str(first_stage(kind)),
            max_stage_attempts=max(1, int(max_stage_attempts)),
            input=dict(payload or {}),
            started_at=stamp,
            updated_at=stamp,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_done(self) -> bool:
        return self.current_stage == DONE

    def record_attempt(self, entry: dict[str, Any]) -> None:
        self.history.append(entry)
        if len(self.history) > HISTORY_LIMIT:
            del self.history[: len(self.history) - HISTORY_LIMIT]

    def snapshot(self) -> PipelineState:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline_kind": str(self.pipeline_kind),
            "status": str(self.status),
            "current_stage": self.current_stage,
            "stage_outputs": copy.deepcopy(self.stage_outputs),
            "stage_attempts": dict(self.stage_attempts),
            "max_stage_attempts": self.max_stage_attempts,
            "last_checkpoint_at": self.last_checkpoint_at,
            "input": copy.deepcopy(self.input),
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "error": self.error,
            "failed_at": self.failed_at,
            "pending_questions": copy.deepcopy(self.pending_questions),
            "resume_command": self.resume_command,
            "answers": copy.deepcopy(self.answers),
            "history": copy.deepcopy(self.history),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PipelineState:
        return cls(
            run_id=str(payload["run_id"]),
            pipeline_kind=PipelineKind(payload["pipeline_kind"]),
            current_stage=str(payload["current_stage"]),
            status=RunStatus(payload.get("status", RunStatus.RUNNING)),
            stage_outputs=dict(payload.get("stage_outputs") or {}),
            stage_attempts={
                str(key): int(value)
                for key, value in dict(payload.get("stage_attempts") or {}).items()
            },
            max_stage_attempts=int(payload.get("max_stage_attempts", 3)),
            last_checkpoint_at=payload.get("last_checkpoint_at"),
            input=dict(payload.get("input") or {}),
            started_at=str(payload.get("started_at") or to_iso(utcnow())),
            updated_at=str(payload.get("updated_at") or to_iso(utcnow())),
            error=payload.get("error"),
            failed_at=payload.get("failed_at"),
            pending_questions=payload.get("pending_questions"),
            resume_command=payload.get("resume_command"),
            answers=dict(payload.get("answers") or {}),
            history=list(payload.get("history") or []),
        )

    def liveness(self, status: str | None = None) -> LivenessRecord:
        return LivenessRecord(
            run_id=self.run_id,
            status=status or str(self.status),
            last_update_at=self.updated_at,
            error=self.error,
            failed_at=self.failed_at,
        )
