"""Stage gates: pure validators, one per stage of every pipeline kind.

A gate receives the candidate output of a stage and the current pipeline
state and answers whether the pipeline may advance. Gates never perform I/O
and never mutate their arguments, so they can be re-evaluated freely.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from waypoint.models import GateResult, PipelineState, Verdict
from waypoint.pipelines import (
    STAGE_ENUMS,
    DataEnrichmentStage,
    DeepResearchStage,
    PipelineKind,
    StageName,
    SystemReviewStage,
)

GateFn = Callable[[Any, PipelineState], GateResult]

MIN_COLLECTION_AGENTS = 2
MIN_PROCESSED_RATIO = 0.8
MIN_RECOMMENDATIONS = 3
MIN_SUMMARY_CHARS = 50
MIN_RESEARCH_REPORT_BLOCKS = 15
MIN_ENRICHMENT_REPORT_BLOCKS = 10
MIN_QUALITY_SCORE = 0.7
MIN_ENRICHMENT_COVERAGE = 0.5
MIN_REVIEW_MARKDOWN_CHARS = 100
RISK_SEVERITIES = frozenset({"low", "medium", "high", "critical"})


class GateTableError(TypeError):
    """Raised at import when a pipeline stage has no gate."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


_CHECKS: dict[str, Callable[[Any], bool]] = {
    "str": lambda value: isinstance(value, str),
    "bool": lambda value: isinstance(value, bool),
    "number": _is_number,
    "list": lambda value: isinstance(value, list),
    "mapping": lambda value: isinstance(value, Mapping),
}


def _shape_error(output: Any, fields: dict[str, str]) -> str | None:
    if not isinstance(output, Mapping):
        return "output is not a mapping"
    for name, kind in fields.items():
        if name not in output:
            return f"missing field '{name}'"
        if not _CHECKS[kind](output[name]):
            return f"field '{name}' must be {kind}"
    return None


def _invalid(label: str, detail: str) -> GateResult:
    return GateResult.fail(f"Invalid {label}: {detail}")


# Deep research -------------------------------------------------------------


def _research_discovery(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(
        output, {"topic": "str", "success_criteria": "list", "confirmed_by_user": "bool"}
    )
    if error:
        return _invalid("brief", error)
    if not output["topic"].strip():
        return _invalid("brief", "empty topic")
    if not output["success_criteria"]:
        return _invalid("brief", "no success criteria")
    if output["confirmed_by_user"] is not True:
        return GateResult.fail("Brief not confirmed")
    return GateResult.ok()


def _research_planning(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"subtopics": "list"})
    if error:
        return _invalid("plan", error)
    subtopics = [
        item
        for item in output["subtopics"]
        if (isinstance(item, str) and item.strip())
        or (isinstance(item, Mapping) and isinstance(item.get("name"), str))
    ]
    if not subtopics:
        return GateResult.fail("No subtopics")
    return GateResult.ok()


def _research_collection(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"agents": "list"})
    if error:
        return _invalid("collection", error)
    reporting = {
        agent["agent"]
        for agent in output["agents"]
        if isinstance(agent, Mapping)
        and isinstance(agent.get("agent"), str)
        and isinstance(agent.get("facts"), list)
    }
    if len(reporting) < MIN_COLLECTION_AGENTS:
        return GateResult.fail("Too few agents returned data")
    return GateResult.ok()


def _research_factcheck(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"verified_facts": "list"})
    if error:
        return _invalid("factcheck", error)
    if not output["verified_facts"]:
        return GateResult.fail("Zero verified facts")
    return GateResult.ok()


def _research_synthesis(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"executive_summary": "str", "recommendations": "list"})
    if error:
        return _invalid("synthesis", error)
    if len(output["executive_summary"].strip()) < MIN_SUMMARY_CHARS:
        return GateResult.fail("Executive summary too short")
    distinct = {
        item.strip().lower()
        for item in output["recommendations"]
        if isinstance(item, str) and item.strip()
    }
    if len(distinct) < MIN_RECOMMENDATIONS:
        return GateResult.fail(f"Fewer than {MIN_RECOMMENDATIONS} recommendations")
    return GateResult.ok()


def _research_devils_advocate(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"risks": "list"})
    if error:
        return _invalid("devils advocate", error)
    for risk in output["risks"]:
        risk_error = _shape_error(risk, {"risk": "str", "severity": "str", "mitigation": "str"})
        if risk_error:
            return _invalid("devils advocate", f"risk {risk_error}")
        if risk["severity"] not in RISK_SEVERITIES:
            return _invalid("devils advocate", f"unknown severity '{risk['severity']}'")
    if not output["risks"]:
        return GateResult.fail("No risks documented")
    return GateResult.ok()


def _research_report(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"block_count": "number"})
    if error:
        return _invalid("report result", error)
    if output["block_count"] < MIN_RESEARCH_REPORT_BLOCKS:
        return GateResult.fail("Report too small")
    return GateResult.ok()


def _review(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"final_verdict": "str", "consensus_score": "number"})
    if error:
        return _invalid("review", error)
    verdict = output["final_verdict"]
    if verdict not in {item.value for item in Verdict}:
        return _invalid("review", f"unknown verdict '{verdict}'")
    if verdict == Verdict.APPROVED:
        return GateResult.ok()
    return GateResult.fail(verdict)


# Data enrichment -----------------------------------------------------------


def _enrichment_discovery(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(
        output,
        {"input_file": "str", "fields_to_enrich": "list", "confirmed_by_user": "bool"},
    )
    if error:
        return _invalid("brief", error)
    if not output["fields_to_enrich"]:
        return _invalid("brief", "no fields to enrich")
    if output["confirmed_by_user"] is not True:
        return GateResult.fail("Brief not confirmed")
    return GateResult.ok()


def _enrichment_planning(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"field_mappings": "list"})
    if error:
        return _invalid("plan", error)
    if not output["field_mappings"]:
        return GateResult.fail("No field mappings")
    return GateResult.ok()


def _enrichment_collection(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"total_processed": "number", "total_errors": "number"})
    if error:
        return _invalid("collection", error)
    total = output["total_processed"] + output["total_errors"]
    if total <= 0:
        return GateResult.fail("No records processed")
    rate = output["total_processed"] / total
    if rate < MIN_PROCESSED_RATIO:
        return GateResult.fail(
            f"Only {round(rate * 100)}% processed (need {round(MIN_PROCESSED_RATIO * 100)}%)"
        )
    return GateResult.ok()


def _enrichment_validation(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"average_quality_score": "number"})
    if error:
        return _invalid("validation", error)
    score = output["average_quality_score"]
    if score < MIN_QUALITY_SCORE:
        return GateResult.fail(f"Quality {score} < {MIN_QUALITY_SCORE}")
    return GateResult.ok()


def _enrichment_synthesis(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"merged_records": "list", "enrichment_coverage": "number"})
    if error:
        return _invalid("synthesis", error)
    coverage = output["enrichment_coverage"]
    if coverage < MIN_ENRICHMENT_COVERAGE:
        return GateResult.fail(f"Coverage {coverage} < {MIN_ENRICHMENT_COVERAGE}")
    return GateResult.ok()


def _enrichment_export(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"file_path": "str", "size_bytes": "number"})
    if error:
        return _invalid("export", error)
    if output["size_bytes"] <= 0:
        return GateResult.fail("Empty file")
    return GateResult.ok()


def _enrichment_report(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"block_count": "number"})
    if error:
        return _invalid("report", error)
    if output["block_count"] < MIN_ENRICHMENT_REPORT_BLOCKS:
        return GateResult.fail("Report too small")
    return GateResult.ok()


def _enrichment_verification(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"all_passed": "bool"})
    if error:
        return _invalid("verification", error)
    if not output["all_passed"]:
        return GateResult.fail("Verification checks failed")
    return GateResult.ok()


# System review -------------------------------------------------------------


def _review_collect(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"collectors": "mapping"})
    if error:
        return _invalid("collect", error)
    produced = [
        name
        for name, result in output["collectors"].items()
        if isinstance(result, Mapping) and result.get("ok") is True
    ]
    if not produced:
        return GateResult.fail("All collectors returned default data, no real data collected")
    return GateResult.ok()


def _review_analyze(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"actions": "list"})
    return _invalid("analyze", error) if error else GateResult.ok()


def _review_fix(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(
        output, {"results": "list", "head_before": "str", "fixes_applied": "bool"}
    )
    return _invalid("fix", error) if error else GateResult.ok()


def _review_split_files(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(
        output, {"results": "list", "split_count": "number", "total_files": "number"}
    )
    return _invalid("split files", error) if error else GateResult.ok()


def _review_verify(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"build_passed": "bool", "tests_passed": "bool"})
    if error:
        return _invalid("verify", error)
    fixes_applied = any(
        isinstance(state.stage_outputs.get(stage), Mapping)
        and state.stage_outputs[stage].get("fixes_applied") is True
        for stage in (SystemReviewStage.FIX, SystemReviewStage.SPLIT_FILES)
    )
    if fixes_applied and not output["build_passed"]:
        return GateResult.fail("Build failed after applying fixes")
    return GateResult.ok()


def _review_report(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"markdown": "str", "score": "number", "report_path": "str"})
    if error:
        return _invalid("report", error)
    if len(output["markdown"]) < MIN_REVIEW_MARKDOWN_CHARS:
        return GateResult.fail("Report markdown too short")
    if not 0 <= output["score"] <= 100:
        return _invalid("report", "score out of range")
    return GateResult.ok()


def _review_deliver(output: Any, state: PipelineState) -> GateResult:
    error = _shape_error(output, {"report_path": "str"})
    if error:
        return _invalid("deliver", error)
    if not output["report_path"].strip():
        return _invalid("deliver", "empty report path")
    return GateResult.ok()


GATES: dict[PipelineKind, dict[StageName, GateFn]] = {
    PipelineKind.DEEP_RESEARCH: {
        DeepResearchStage.DISCOVERY: _research_discovery,
        DeepResearchStage.PLANNING: _research_planning,
        DeepResearchStage.COLLECTION: _research_collection,
        DeepResearchStage.FACTCHECK: _research_factcheck,
        DeepResearchStage.SYNTHESIS: _research_synthesis,
        DeepResearchStage.DEVILS_ADVOCATE: _research_devils_advocate,
        DeepResearchStage.REPORT: _research_report,
        DeepResearchStage.REVIEW: _review,
    },
    PipelineKind.DATA_ENRICHMENT: {
        DataEnrichmentStage.DISCOVERY: _enrichment_discovery,
        DataEnrichmentStage.PLANNING: _enrichment_planning,
        DataEnrichmentStage.COLLECTION: _enrichment_collection,
        DataEnrichmentStage.VALIDATION: _enrichment_validation,
        DataEnrichmentStage.SYNTHESIS: _enrichment_synthesis,
        DataEnrichmentStage.EXPORT: _enrichment_export,
        DataEnrichmentStage.REPORT: _enrichment_report,
        DataEnrichmentStage.VERIFICATION: _enrichment_verification,
    },
    PipelineKind.SYSTEM_REVIEW: {
        SystemReviewStage.COLLECT: _review_collect,
        SystemReviewStage.ANALYZE: _review_analyze,
        SystemReviewStage.FIX: _review_fix,
        SystemReviewStage.SPLIT_FILES: _review_split_files,
        SystemReviewStage.VERIFY: _review_verify,
        SystemReviewStage.REPORT: _review_report,
        SystemReviewStage.DELIVER: _review_deliver,
    },
}


def assert_gate_table(table: Mapping[PipelineKind, Mapping[StageName, GateFn]]) -> None:
    for kind, enum_type in STAGE_ENUMS.items():
        gates = table.get(kind)
        if gates is None:
            raise GateTableError(f"No gates registered for pipeline '{kind}'.")
        missing = [str(stage) for stage in enum_type if stage not in gates]
        if missing:
            raise GateTableError(
                f"Pipeline '{kind}' has stages without gates: {', '.join(missing)}"
            )


assert_gate_table(GATES)


def check_gate(stage: StageName | str, output: Any, state: PipelineState) -> GateResult:
    enum_type = STAGE_ENUMS[state.pipeline_kind]
    return GATES[state.pipeline_kind][enum_type(stage)](output, state)  # type: ignore[index]
