import pytest

from waypoint.gates import GATES, GateTableError, assert_gate_table, check_gate
from waypoint.models import GateResult, PipelineState
from waypoint.pipelines import DeepResearchStage, PipelineKind, SystemReviewStage


def _research_state() -> PipelineState:
    return PipelineState.new(PipelineKind.DEEP_RESEARCH, {"topic": "solid state batteries"})


def _review_state(**outputs: dict) -> PipelineState:
    state = PipelineState.new(PipelineKind.SYSTEM_REVIEW, {})
    state.stage_outputs.update(outputs)
    return state


def test_gate_is_pure_for_identical_inputs() -> None:
    state = _research_state()
    output = {"executive_summary": "short", "recommendations": ["a"]}
    before = state.to_dict()

    first = check_gate("synthesis", output, state)
    second = check_gate("synthesis", output, state)

    assert first == second
    assert first.passed is False
    assert state.to_dict() == before
    assert output == {"executive_summary": "short", "recommendations": ["a"]}


def test_gate_table_rejects_missing_stage() -> None:
    table = {kind: dict(gates) for kind, gates in GATES.items()}
    del table[PipelineKind.DEEP_RESEARCH][DeepResearchStage.FACTCHECK]

    with pytest.raises(GateTableError, match="factcheck"):
        assert_gate_table(table)


def test_gate_table_rejects_missing_pipeline() -> None:
    table = {kind: gates for kind, gates in GATES.items() if kind != PipelineKind.SYSTEM_REVIEW}

    with pytest.raises(GateTableError, match="system-review"):
        assert_gate_table(table)


def test_discovery_requires_confirmed_brief() -> None:
    state = _research_state()
    brief = {"topic": "batteries", "success_criteria": ["cost curve"], "confirmed_by_user": False}

    assert check_gate("discovery", brief, state) == GateResult.fail("Brief not confirmed")
    brief["confirmed_by_user"] = True
    assert check_gate("discovery", brief, state).passed is True


def test_discovery_reports_structural_problem() -> None:
    result = check_gate("discovery", {"topic": "batteries"}, _research_state())

    assert result.passed is False
    assert result.reason == "Invalid brief: missing field 'success_criteria'"


def test_collection_needs_two_reporting_agents() -> None:
    state = _research_state()
    one = {"agents": [{"agent": "web", "facts": []}, {"agent": "web", "facts": []}]}
    two = {"agents": [{"agent": "web", "facts": []}, {"agent": "papers", "facts": ["x"]}]}

    assert check_gate("collection", one, state).reason == "Too few agents returned data"
    assert check_gate("collection", two, state).passed is True


def test_synthesis_needs_summary_and_three_recommendations() -> None:
    state = _research_state()
    summary = "Solid state cells reach price parity with lithium ion by the end of decade."

    too_few = {"executive_summary": summary, "recommendations": ["a", "b", "B"]}
    enough = {"executive_summary": summary, "recommendations": ["a", "b", "c"]}

    assert check_gate("synthesis", too_few, state).passed is False
    assert check_gate("synthesis", enough, state).passed is True


def test_devils_advocate_checks_risk_severity() -> None:
    state = _research_state()
    bad = {"risks": [{"risk": "supply", "severity": "apocalyptic", "mitigation": "none"}]}
    good = {"risks": [{"risk": "supply", "severity": "high", "mitigation": "second source"}]}

    assert "unknown severity" in (check_gate("devils_advocate", bad, state).reason or "")
    assert check_gate("devils_advocate", good, state).passed is True
    assert check_gate("devils_advocate", {"risks": []}, state).reason == "No risks documented"


def test_review_gate_passes_only_approved_verdict() -> None:
    state = _research_state()

    approved = check_gate(
        "review", {"final_verdict": "approved", "consensus_score": 82}, state
    )
    revision = check_gate(
        "review", {"final_verdict": "needs_revision", "consensus_score": 61}, state
    )
    rejected = check_gate("review", {"final_verdict": "rejected", "consensus_score": 20}, state)

    assert approved.passed is True
    assert revision == GateResult.fail("needs_revision")
    assert rejected == GateResult.fail("rejected")


def test_enrichment_collection_with_zero_records_fails() -> None:
    state = PipelineState.new(PipelineKind.DATA_ENRICHMENT, {})

    empty = check_gate("collection", {"total_processed": 0, "total_errors": 0}, state)
    low = check_gate("collection", {"total_processed": 79, "total_errors": 21}, state)
    ok = check_gate("collection", {"total_processed": 80, "total_errors": 20}, state)

    assert empty.reason == "No records processed"
    assert low.reason == "Only 79% processed (need 80%)"
    assert ok.passed is True


def test_enrichment_quality_and_coverage_thresholds() -> None:
    state = PipelineState.new(PipelineKind.DATA_ENRICHMENT, {})

    assert check_gate("validation", {"average_quality_score": 0.69}, state).passed is False
    assert check_gate("validation", {"average_quality_score": 0.7}, state).passed is True
    assert (
        check_gate("synthesis", {"merged_records": [], "enrichment_coverage": 0.4}, state).passed
        is False
    )
    assert check_gate("export", {"file_path": "out.csv", "size_bytes": 0}, state).reason == (
        "Empty file"
    )


def test_collect_gate_requires_real_collector_data() -> None:
    state = _review_state()
    defaults = {"collectors": {"git": {"ok": False}, "sentry": {"ok": False}}}
    partial = {"collectors": {"git": {"ok": True}, "sentry": {"ok": False}}}

    assert check_gate("collect", defaults, state).passed is False
    assert check_gate("collect", partial, state).passed is True


def test_verify_fails_build_only_when_fixes_were_applied() -> None:
    verify_output = {"build_passed": False, "tests_passed": True}
    fix_output = {"results": [], "head_before": "abc123", "fixes_applied": True}

    untouched = _review_state(
        fix={"results": [], "head_before": "abc123", "fixes_applied": False}
    )
    fixed = _review_state(fix=fix_output)
    split = _review_state(
        split_files={"results": [], "split_count": 1, "total_files": 3, "fixes_applied": True}
    )

    assert check_gate(SystemReviewStage.VERIFY, verify_output, untouched).passed is True
    assert check_gate(SystemReviewStage.VERIFY, verify_output, fixed).reason == (
        "Build failed after applying fixes"
    )
    assert check_gate(SystemReviewStage.VERIFY, verify_output, split).passed is False


def test_report_and_deliver_gates() -> None:
    state = _review_state()
    markdown = "# System review\n\n" + "Finding. " * 20

    assert check_gate(
        "report", {"markdown": markdown, "score": 140, "report_path": "r.md"}, state
    ).passed is False
    assert check_gate(
        "report", {"markdown": markdown, "score": 74, "report_path": "r.md"}, state
    ).passed is True
    assert check_gate("deliver", {"report_path": "  "}, state).passed is False
    assert check_gate("deliver", {"report_path": "reports/r.md"}, state).passed is True


def test_unknown_stage_for_pipeline_raises() -> None:
    with pytest.raises(ValueError):
        check_gate("export", {}, _research_state())
