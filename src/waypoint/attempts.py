from __future__ import annotations

from enum import StrEnum
from typing import Any

from waypoint.errors import AttemptsExhaustedError
from waypoint.models import PipelineState, RunStatus

FAILURE_OUTCOMES = frozenset({"gate_failed", "failed"})


class AttemptState(StrEnum):
    NOT_ATTEMPTED = "not_attempted"
    ATTEMPTING = "attempting"
    ACCEPTED = "accepted"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FATAL = "failed_fatal"


class AttemptTracker:
    """Per-stage retry accounting with a hard ceiling.

    Counters live in ``PipelineState.stage_attempts`` so they survive restarts.
    They are never reset: once a stage is accepted its counter is simply no
    longer consulted.
    """

    def begin(self, state: PipelineState, stage: str) -> int:
        attempts = int(state.stage_attempts.get(stage, 0))
        if attempts >= state.max_stage_attempts:
            raise AttemptsExhaustedError(stage, attempts)
        state.stage_attempts[stage] = attempts + 1
        return attempts + 1

    def refund(self, state: PipelineState, stage: str) -> None:
        """Give back the attempt taken by a run that paused for input."""
        attempts = int(state.stage_attempts.get(stage, 0))
        state.stage_attempts[stage] = max(0, attempts - 1)

    def remaining(self, state: PipelineState, stage: str) -> int:
        return max(0, state.max_stage_attempts - int(state.stage_attempts.get(stage, 0)))

    @staticmethod
    def _last_settled(state: PipelineState, stage: str) -> dict[str, Any] | None:
        for entry in reversed(state.history):
            if entry.get("stage") == stage and entry.get("outcome") != "paused":
                return entry
        return None

    def status(self, state: PipelineState, stage: str) -> AttemptState:
        if stage in state.stage_outputs:
            return AttemptState.ACCEPTED
        attempts = int(state.stage_attempts.get(stage, 0))
        if attempts == 0:
            return AttemptState.NOT_ATTEMPTED
        if state.status == RunStatus.FAILED and state.current_stage == stage:
            return AttemptState.FAILED_FATAL
        last = self._last_settled(state, stage)
        if last is None or last.get("outcome") not in FAILURE_OUTCOMES:
            return AttemptState.ATTEMPTING
        if int(last.get("attempt", 0)) < attempts:
            return AttemptState.ATTEMPTING
        if attempts >= state.max_stage_attempts:
            return AttemptState.FAILED_FATAL
        return AttemptState.FAILED_RETRYABLE
