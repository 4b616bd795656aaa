from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from waypoint.errors import StageError, StageExecutionError, StageTimeoutError, WaypointError
from waypoint.models import PipelineState
from waypoint.pipelines import STAGE_ENUMS, PipelineKind, StageName, parse_stage

logger = logging.getLogger(__name__)

DEFAULT_STAGE_TIMEOUT_SECONDS = 3600.0


@dataclass(frozen=True, slots=True)
class NeedsInput:
    """Returned by a stage function that cannot continue without a human."""

    questions: Any


class PausedForInput(Exception):
    """Raised by stage functions that prefer to signal a pause by exception."""

    def __init__(self, questions: Any) -> None:
        super().__init__("stage paused for input")
        self.questions = questions


ProgressReporter = Callable[[str], None]


@dataclass(slots=True)
class StageContext:
    stage: StageName
    state: PipelineState
    input: dict[str, Any] = field(default_factory=dict)
    answers: Any = None
    timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS
    reporter: ProgressReporter | None = None

    def progress(self, message: str) -> None:
        """Report that the stage is still working; refreshes the run's liveness."""
        if self.reporter is not None:
            self.reporter(message)


StageResult = Mapping[str, Any] | NeedsInput
StageFunction = Callable[[StageContext], Awaitable[StageResult] | StageResult]


@dataclass(frozen=True, slots=True)
class Completed:
    output: dict[str, Any]


@dataclass(frozen=True, slots=True)
class Paused:
    questions: Any


@dataclass(frozen=True, slots=True)
class Failed:
    error: StageError


StageOutcome = Completed | Paused | Failed


class StageRegistry:
    """Maps every stage of one pipeline kind to the function that executes it."""

    def __init__(
        self,
        kind: PipelineKind | str,
        functions: Mapping[str, StageFunction] | None = None,
    ) -> None:
        self.kind = PipelineKind(kind)
        self._functions: dict[StageName, StageFunction] = {}
        for stage, function in (functions or {}).items():
            self.register(stage, function)

    def register(self, stage: StageName | str, function: StageFunction) -> None:
        self._functions[parse_stage(self.kind, str(stage))] = function

    def stage(self, stage: StageName | str) -> Callable[[StageFunction], StageFunction]:
        def _decorator(function: StageFunction) -> StageFunction:
            self.register(stage, function)
            return function

        return _decorator

    def missing(self) -> list[str]:
        return [str(stage) for stage in STAGE_ENUMS[self.kind] if stage not in self._functions]

    def validate(self) -> None:
        missing = self.missing()
        if missing:
            raise WaypointError(
                f"Pipeline '{self.kind}' has no stage function for: {', '.join(missing)}"
            )

    def resolve(self, stage: StageName | str) -> StageFunction:
        resolved = parse_stage(self.kind, str(stage))
        function = self._functions.get(resolved)
        if function is None:
            raise StageExecutionError(
                f"No stage function registered for {self.kind}/{resolved}",
                stage=str(resolved),
                retriable=False,
            )
        return function


def _is_async_callable(function: Any) -> bool:
    return inspect.iscoroutinefunction(function) or inspect.iscoroutinefunction(
        getattr(function, "__call__", None)
    )


def _discard_abandoned(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("Abandoned stage task finished with %r", error)


class StageRunner:
    """Executes one stage against its deadline and reports a uniform outcome.

    The runner never mutates the pipeline state. On deadline the stage task
    is asked to cancel and then abandoned without waiting: coroutines that
    honour cancellation stop cleanly, while plain functions running in a
    worker thread keep running until they return and their result is
    discarded.
    """

    def __init__(
        self,
        registry: StageRegistry,
        *,
        default_timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
        stage_timeouts: Mapping[str, float] | None = None,
    ) -> None:
        self.registry = registry
        self.default_timeout_seconds = default_timeout_seconds
        self.stage_timeouts = dict(stage_timeouts or {})

    def timeout_for(self, stage: StageName | str) -> float:
        return float(self.stage_timeouts.get(str(stage), self.default_timeout_seconds))

    @staticmethod
    def _stage_input(stage: str, state: PipelineState) -> tuple[dict[str, Any], Any]:
        merged = dict(state.input)
        answers = state.answers.get(stage)
        if isinstance(answers, Mapping):
            merged.update(answers)
        elif answers is not None:
            merged["answers"] = answers
        return merged, answers

    @staticmethod
    async def _invoke(function: StageFunction, context: StageContext) -> Any:
        if _is_async_callable(function):
            return await function(context)  # type: ignore[misc]
        result = await asyncio.to_thread(function, context)
        if inspect.isawaitable(result):
            return await result
        return result

    async def run(
        self,
        stage: StageName | str,
        state: PipelineState,
        *,
        progress: ProgressReporter | None = None,
    ) -> StageOutcome:
        name = str(stage)
        try:
            function = self.registry.resolve(name)
        except StageError as exc:
            return Failed(exc)

        timeout = self.timeout_for(name)
        stage_input, answers = self._stage_input(name, state)
        context = StageContext(
            stage=parse_stage(state.pipeline_kind, name),
            state=state.snapshot(),
            input=stage_input,
            answers=answers,
            timeout_seconds=timeout,
            reporter=progress,
        )

        task = asyncio.ensure_future(self._invoke(function, context))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            task.add_done_callback(_discard_abandoned)
            timeout_ms = int(timeout * 1000)
            logger.warning("Stage %s abandoned after %sms deadline", name, timeout_ms)
            return Failed(
                StageTimeoutError(f"stage {name} timeout after {timeout_ms}ms", stage=name)
            )

        try:
            result = task.result()
        except PausedForInput as signal:
            return Paused(signal.questions)
        except asyncio.CancelledError:
            return Failed(StageExecutionError(f"stage {name} was cancelled", stage=name))
        except StageError as exc:
            return Failed(exc)
        except Exception as exc:
            error = StageExecutionError(
                f"stage {name} raised {type(exc).__name__}: {exc}", stage=name
            )
            error.__cause__ = exc
            return Failed(error)

        if isinstance(result, NeedsInput):
            return Paused(result.questions)
        if not isinstance(result, Mapping):
            return Failed(
                StageExecutionError(
                    f"stage {name} returned {type(result).__name__}, expected a mapping",
                    stage=name,
                )
            )
        return Completed(dict(result))
