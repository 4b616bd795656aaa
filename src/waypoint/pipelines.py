from __future__ import annotations

from enum import StrEnum

DONE = "done"


class PipelineKind(StrEnum):
    DEEP_RESEARCH = "deep-research"
    DATA_ENRICHMENT = "data-enrichment"
    SYSTEM_REVIEW = "system-review"


class DeepResearchStage(StrEnum):
    DISCOVERY = "discovery"
    PLANNING = "planning"
    COLLECTION = "collection"
    FACTCHECK = "factcheck"
    SYNTHESIS = "synthesis"
    DEVILS_ADVOCATE = "devils_advocate"
    REPORT = "report"
    REVIEW = "review"


class DataEnrichmentStage(StrEnum):
    DISCOVERY = "discovery"
    PLANNING = "planning"
    COLLECTION = "collection"
    VALIDATION = "validation"
    SYNTHESIS = "synthesis"
    EXPORT = "export"
    REPORT = "report"
    VERIFICATION = "verification"


class SystemReviewStage(StrEnum):
    COLLECT = "collect"
    ANALYZE = "analyze"
    FIX = "fix"
    SPLIT_FILES = "split_files"
    VERIFY = "verify"
    REPORT = "report"
    DELIVER = "deliver"


StageName = DeepResearchStage | DataEnrichmentStage | SystemReviewStage

# Declaration order of each enum is the execution order of the pipeline.
STAGE_ENUMS: dict[PipelineKind, type[StrEnum]] = {
    PipelineKind.DEEP_RESEARCH: DeepResearchStage,
    PipelineKind.DATA_ENRICHMENT: DataEnrichmentStage,
    PipelineKind.SYSTEM_REVIEW: SystemReviewStage,
}


def stage_sequence(kind: PipelineKind | str) -> tuple[StageName, ...]:
    return tuple(STAGE_ENUMS[PipelineKind(kind)])  # type: ignore[arg-type]


def parse_stage(kind: PipelineKind | str, value: str) -> StageName:
    enum_type = STAGE_ENUMS[PipelineKind(kind)]
    try:
        return enum_type(value)  # type: ignore[return-value]
    except ValueError as exc:
        raise ValueError(f"Unknown stage '{value}' for pipeline '{kind}'.") from exc


def first_stage(kind: PipelineKind | str) -> StageName:
    return stage_sequence(kind)[0]


def next_stage(kind: PipelineKind | str, stage: StageName | str) -> str:
    """Return the stage after ``stage`` or ``DONE`` when it is the last one."""
    sequence = stage_sequence(kind)
    current = parse_stage(kind, str(stage))
    index = sequence.index(current)
    if index + 1 >= len(sequence):
        return DONE
    return sequence[index + 1]
