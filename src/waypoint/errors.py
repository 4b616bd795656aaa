from __future__ import annotations


class WaypointError(RuntimeError):
    """Base class for orchestration failures."""

    def __init__(self, message: str, *, retriable: bool = False) -> None:
        super().__init__(message)
        self.retriable = retriable


class StageError(WaypointError):
    """Raised when a single stage attempt fails; counted against the attempt ceiling."""

    def __init__(self, message: str, *, stage: str | None = None, retriable: bool = True) -> None:
        super().__init__(message, retriable=retriable)
        self.stage = stage


class StageTimeoutError(StageError):
    """Raised when a stage exceeds its deadline."""


class StageExecutionError(StageError):
    """Raised when a stage function raises or returns an unusable value."""


class GateValidationError(StageError):
    """Raised when stage output does not pass its gate."""


class AttemptsExhaustedError(WaypointError):
    """Raised when a stage exceeds max_stage_attempts. Never retried."""

    def __init__(self, stage: str, attempts: int) -> None:
        super().__init__(f"stage {stage} failed {attempts} times, aborting", retriable=False)
        self.stage = stage
        self.attempts = attempts


class AllReviewersFailedError(WaypointError):
    """Raised when no reviewer backend produced an opinion."""


class WatchdogForcedFailure(WaypointError):
    """Terminal failure imposed by the watchdog on an idle run."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"watchdog: {reason}", retriable=False)
        self.reason = reason


class InvalidTransitionError(WaypointError):
    """Raised when a run is asked to do something its status does not allow."""


class StateStoreError(WaypointError):
    """Raised when state persistence fails."""


class RunNotFoundError(StateStoreError):
    """Raised when a run id has no persisted state."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class ReviewerError(WaypointError):
    """Raised when a reviewer backend fails or returns an unusable opinion."""

    def __init__(self, message: str, *, reviewer: str | None = None) -> None:
        super().__init__(message, retriable=False)
        self.reviewer = reviewer
