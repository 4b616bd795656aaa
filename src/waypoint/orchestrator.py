from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from waypoint.attempts import AttemptTracker
from waypoint.config import PipelineConfig
from waypoint.errors import (
    AttemptsExhaustedError,
    InvalidTransitionError,
    RunNotFoundError,
)
from waypoint.gates import check_gate
from waypoint.models import LivenessStatus, PipelineState, RunStatus, to_iso, utcnow
from waypoint.pipelines import DONE, PipelineKind, next_stage
from waypoint.runner import Completed, Failed, Paused, StageRegistry, StageRunner
from waypoint.state.base import StateStore

logger = logging.getLogger(__name__)

OrchestratorEventHook = Callable[[dict[str, Any]], None]

RESUME_COMMAND_TEMPLATE = "waypoint resume {run_id} --answers answers.json"


@dataclass(slots=True)
class RunResult:
    run_id: str
    status: RunStatus
    current_stage: str
    resume_token: str | None = None
    questions: Any = None
    resume_command: str | None = None
    error: str | None = None

    @classmethod
    def from_state(cls, state: PipelineState) -> RunResult:
        paused = state.status == RunStatus.PAUSED_FOR_INPUT
        return cls(
            run_id=state.run_id,
            status=state.status,
            current_stage=state.current_stage,
            resume_token=state.run_id if paused else None,
            questions=state.pending_questions if paused else None,
            resume_command=state.resume_command if paused else None,
            error=state.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": str(self.status),
            "current_stage": self.current_stage,
            "resume_token": self.resume_token,
            "questions": self.questions,
            "resume_command": self.resume_command,
            "error": self.error,
        }


class _StageHeartbeat:
    """Progress callback for one stage attempt; silent once the attempt is over."""

    def __init__(self, beat: Callable[[str], None]) -> None:
        self._beat = beat
        self._open = True

    def __call__(self, message: str) -> None:
        if self._open:
            self._beat(message)

    def close(self) -> None:
        self._open = False


class Orchestrator:
    """Drives runs stage by stage and is the only normal writer of their state.

    Every transition is checkpointed to the store together with its liveness
    projection, so a run can be continued by a new process from whatever was
    last saved. Stages that already have accepted output are never executed
    again.
    """

    def __init__(
        self,
        store: StateStore,
        registries: Mapping[PipelineKind | str, StageRegistry] | Iterable[StageRegistry],
        *,
        config: PipelineConfig | None = None,
        event_hook: OrchestratorEventHook | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config or PipelineConfig()
        self.event_hook = event_hook
        self.clock = clock
        self.attempts = AttemptTracker()
        if isinstance(registries, Mapping):
            registry_list = list(registries.values())
        else:
            registry_list = list(registries)
        self.registries: dict[PipelineKind, StageRegistry] = {
            registry.kind: registry for registry in registry_list
        }
        self.runners: dict[PipelineKind, StageRunner] = {
            kind: StageRunner(
                registry,
                default_timeout_seconds=self.config.stage_timeout_seconds,
                stage_timeouts=self.config.stage_timeouts,
            )
            for kind, registry in self.registries.items()
        }

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _now(self) -> str:
        return to_iso(self.clock())

    def _checkpoint(self, state: PipelineState, liveness: LivenessStatus | None = None) -> None:
        stamp = self._now()
        state.updated_at = stamp
        state.last_checkpoint_at = stamp
        self.store.save(state, liveness_status=str(liveness) if liveness else None)

    def _runner_for(self, kind: PipelineKind) -> StageRunner:
        runner = self.runners.get(kind)
        if runner is None:
            raise InvalidTransitionError(f"No stage registry configured for pipeline '{kind}'")
        return runner

    def _load(self, run_id: str) -> PipelineState:
        state = self.store.load(run_id)
        if state is None:
            raise RunNotFoundError(run_id)
        return state

    def create_run(
        self, kind: PipelineKind | str, payload: dict[str, Any] | None = None
    ) -> PipelineState:
        kind = PipelineKind(kind)
        registry = self.registries.get(kind)
        if registry is None:
            raise InvalidTransitionError(f"No stage registry configured for pipeline '{kind}'")
        registry.validate()
        state = PipelineState.new(
            kind,
            payload,
            max_stage_attempts=self.config.max_stage_attempts,
            now=self.clock(),
        )
        self._checkpoint(state, LivenessStatus.PENDING)
        self._emit({"event": "run_started", "run_id": state.run_id, "pipeline": str(kind)})
        logger.info("Created run %s (%s)", state.run_id, kind)
        return state

    def status(self, run_id: str) -> RunResult:
        return RunResult.from_state(self._load(run_id))

    async def start(
        self, kind: PipelineKind | str, payload: dict[str, Any] | None = None
    ) -> RunResult:
        state = self.create_run(kind, payload)
        return await self.run(state.run_id)

    async def resume(self, run_id: str, answers: Any) -> RunResult:
        state = self._load(run_id)
        if state.status != RunStatus.PAUSED_FOR_INPUT:
            raise InvalidTransitionError(
                f"Run {run_id} is {state.status}, only paused runs can be resumed"
            )
        state.answers[state.current_stage] = answers
        state.status = RunStatus.RUNNING
        state.pending_questions = None
        state.resume_command = None
        self._checkpoint(state, LivenessStatus.INITIALIZING)
        logger.info("Resuming run %s at stage %s", run_id, state.current_stage)
        return await self.run(run_id)

    async def run(self, run_id: str) -> RunResult:
        """Drive a stored run until it completes, fails or pauses.

        Also the recovery path for a run whose process died mid-stage: accepted
        stages are skipped and the interrupted stage starts a new attempt.
        """
        state = self._load(run_id)
        if state.is_terminal or state.status == RunStatus.PAUSED_FOR_INPUT:
            return RunResult.from_state(state)

        runner = self._runner_for(state.pipeline_kind)
        self.store.touch_liveness(run_id, str(LivenessStatus.INITIALIZING), self.clock())

        while state.status == RunStatus.RUNNING:
            if self._terminated_externally(state):
                break
            await self.tick(state, runner)
        return RunResult.from_state(state)

    def _terminated_externally(self, state: PipelineState) -> bool:
        persisted = self.store.load(state.run_id)
        if persisted is None or not persisted.is_terminal:
            return False
        state.status = persisted.status
        state.error = persisted.error
        state.failed_at = persisted.failed_at
        logger.warning("Run %s was terminated externally: %s", state.run_id, state.error)
        return True

    def _finish(self, state: PipelineState) -> None:
        state.status = RunStatus.COMPLETED
        state.current_stage = DONE
        self._checkpoint(state)
        self._emit({"event": "run_completed", "run_id": state.run_id})
        logger.info("Run %s completed", state.run_id)

    def _fail(self, state: PipelineState, reason: str) -> None:
        stamp = self._now()
        state.status = RunStatus.FAILED
        state.error = reason
        state.failed_at = stamp
        self._checkpoint(state)
        self._emit(
            {
                "event": "run_failed",
                "run_id": state.run_id,
                "stage": state.current_stage,
                "error": reason,
            }
        )
        logger.error("Run %s failed: %s", state.run_id, reason)

    def _advance_past_accepted(self, state: PipelineState) -> None:
        while state.current_stage != DONE and state.current_stage in state.stage_outputs:
            state.current_stage = str(next_stage(state.pipeline_kind, state.current_stage))

    def _record(
        self,
        state: PipelineState,
        *,
        attempt: int,
        outcome: str,
        started: float,
        reason: str | None = None,
    ) -> None:
        entry: dict[str, Any] = {
            "stage": state.current_stage,
            "attempt": attempt,
            "outcome": outcome,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "at": self._now(),
        }
        if reason is not None:
            entry["reason"] = reason
        state.record_attempt(entry)

    def _progress_reporter(self, run_id: str, stage: str, attempt: int) -> _StageHeartbeat:
        def _beat(message: str) -> None:
            liveness = self.store.get_liveness(run_id)
            if liveness is not None and liveness.status != LivenessStatus.RUNNING:
                return
            self.store.touch_liveness(run_id, str(LivenessStatus.RUNNING), self.clock())
            self._emit(
                {
                    "event": "stage_progress",
                    "run_id": run_id,
                    "stage": stage,
                    "attempt": attempt,
                    "message": str(message),
                }
            )
            logger.debug("Run %s stage %s: %s", run_id, stage, message)

        return _StageHeartbeat(_beat)

    async def tick(self, state: PipelineState, runner: StageRunner) -> None:
        """Execute one attempt of the current stage and checkpoint the result."""
        self._advance_past_accepted(state)
        if state.current_stage == DONE:
            self._finish(state)
            return

        stage = state.current_stage
        try:
            attempt = self.attempts.begin(state, stage)
        except AttemptsExhaustedError as exc:
            self._fail(state, str(exc))
            return

        self._checkpoint(state, LivenessStatus.RUNNING)
        self._emit(
            {"event": "stage_started", "run_id": state.run_id, "stage": stage, "attempt": attempt}
        )
        logger.info("Run %s stage %s attempt %s", state.run_id, stage, attempt)
        started = time.monotonic()
        heartbeat = self._progress_reporter(state.run_id, stage, attempt)
        try:
            outcome = await runner.run(stage, state, progress=heartbeat)
        finally:
            heartbeat.close()
        if self._terminated_externally(state):
            return

        if isinstance(outcome, Paused):
            self.attempts.refund(state, stage)
            self._record(state, attempt=attempt, outcome="paused", started=started)
            state.status = RunStatus.PAUSED_FOR_INPUT
            state.pending_questions = outcome.questions
            state.resume_command = RESUME_COMMAND_TEMPLATE.format(run_id=state.run_id)
            self._checkpoint(state)
            self._emit(
                {
                    "event": "run_paused",
                    "run_id": state.run_id,
                    "stage": stage,
                    "resume_command": state.resume_command,
                }
            )
            logger.info("Run %s paused for input at %s", state.run_id, stage)
            return

        if isinstance(outcome, Failed):
            reason = str(outcome.error)
            self._record(state, attempt=attempt, outcome="failed", started=started, reason=reason)
            self._emit(
                {
                    "event": "stage_failed",
                    "run_id": state.run_id,
                    "stage": stage,
                    "attempt": attempt,
                    "error": reason,
                    "retriable": outcome.error.retriable,
                }
            )
            logger.warning("Run %s stage %s failed: %s", state.run_id, stage, reason)
            if not outcome.error.retriable:
                self._fail(state, reason)
                return
            self._checkpoint(state)
            return

        assert isinstance(outcome, Completed)
        gate = check_gate(stage, outcome.output, state)
        if not gate.passed:
            reason = gate.reason or "gate failed"
            self._record(
                state, attempt=attempt, outcome="gate_failed", started=started, reason=reason
            )
            self._emit(
                {
                    "event": "gate_failed",
                    "run_id": state.run_id,
                    "stage": stage,
                    "attempt": attempt,
                    "reason": reason,
                }
            )
            logger.warning("Run %s gate %s rejected output: %s", state.run_id, stage, reason)
            self._checkpoint(state)
            return

        state.stage_outputs[stage] = outcome.output
        self._record(state, attempt=attempt, outcome="accepted", started=started)
        state.current_stage = str(next_stage(state.pipeline_kind, stage))
        self._checkpoint(state)
        self._emit(
            {"event": "stage_completed", "run_id": state.run_id, "stage": stage, "attempt": attempt}
        )
