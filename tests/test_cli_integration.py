import json
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

from waypoint.cli import cli
from waypoint.config import load_config
from waypoint.models import PipelineState
from waypoint.pipelines import PipelineKind
from waypoint.state import JsonFileStateStore

STAGES_MODULE = '''
from waypoint.runner import NeedsInput, StageRegistry


def build(consilium):
    registry = StageRegistry("system-review")

    @registry.stage("collect")
    def collect(ctx):
        if ctx.answers is None:
            return NeedsInput(["Which repository should be reviewed?"])
        return {"collectors": {"git": {"ok": True, "repo": ctx.input["repo"]}}}

    registry.register("analyze", lambda ctx: {"actions": []})
    registry.register(
        "fix", lambda ctx: {"results": [], "head_before": "abc123", "fixes_applied": False}
    )
    registry.register(
        "split_files", lambda ctx: {"results": [], "split_count": 0, "total_files": 4}
    )
    registry.register("verify", lambda ctx: {"build_passed": True, "tests_passed": True})
    registry.register(
        "report",
        lambda ctx: {"markdown": "# Review\\n" + "ok " * 60, "score": 88, "report_path": "r.md"},
    )
    registry.register("deliver", lambda ctx: {"report_path": "r.md"})
    return [registry]


def broken(consilium):
    registry = build(consilium)[0]
    registry.register("analyze", lambda ctx: {"actions": "not a list"})
    return registry
'''


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, "path", list(sys.path))
    module_name = f"review_stages_{tmp_path.name.replace('-', '_')}"
    (tmp_path / f"{module_name}.py").write_text(STAGES_MODULE, encoding="utf-8")
    (tmp_path / "registry_name.txt").write_text(module_name, encoding="utf-8")
    return tmp_path


def _module(workspace: Path) -> str:
    return (workspace / "registry_name.txt").read_text(encoding="utf-8")


def test_init_writes_config_and_state_root(workspace: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--registry", f"{_module(workspace)}:build"])

    assert result.exit_code == 0, result.output
    assert "Initialized Waypoint" in result.output
    config = load_config(workspace / "waypoint.toml")
    assert config.pipeline.registry == f"{_module(workspace)}:build"
    assert (workspace / ".waypoint" / "runs").is_dir()


def test_run_pause_resume_status_flow(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init", "--registry", f"{_module(workspace)}:build"])
    (workspace / "input.json").write_text(json.dumps({"scope": "full"}), encoding="utf-8")

    paused = runner.invoke(cli, ["run", "system-review", "--input", "input.json"])

    assert paused.exit_code == 0, paused.output
    assert "Paused for input. Resume with: waypoint resume system-review-" in paused.output
    run_id = JsonFileStateStore(workspace / ".waypoint").list_runs()[0]

    status = runner.invoke(cli, ["status", run_id])
    payload = json.loads(status.output)
    assert payload["status"] == "paused_for_input"
    assert payload["pending_questions"] == ["Which repository should be reviewed?"]
    assert payload["liveness"]["status"] == "paused_for_input"

    (workspace / "answers.json").write_text(json.dumps({"repo": "acme/api"}), encoding="utf-8")
    resumed = runner.invoke(cli, ["resume", run_id, "--answers", "answers.json"])

    assert resumed.exit_code == 0, resumed.output
    assert f"Run {run_id} completed." in resumed.output

    verbose = json.loads(runner.invoke(cli, ["status", run_id, "--verbose"]).output)
    assert verbose["status"] == "completed"
    assert verbose["stage_outputs"]["collect"]["collectors"]["git"]["repo"] == "acme/api"

    runs = runner.invoke(cli, ["runs"])
    assert f"{run_id}\tcompleted\tdone" in runs.output
    assert runner.invoke(cli, ["runs", "--active"]).output.strip() == "No runs."

    events = runner.invoke(cli, ["events", "--limit", "200"]).output
    names = [json.loads(line)["event"] for line in events.splitlines()]
    assert names[0] == "run_started"
    assert "run_paused" in names
    assert names[-1] == "run_completed"


def test_failed_run_exits_with_error(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init", "--registry", f"{_module(workspace)}:broken"])
    store = JsonFileStateStore(workspace / ".waypoint")

    first = runner.invoke(cli, ["run", "system-review"])
    assert first.exit_code == 0
    run_id = store.list_runs()[0]
    (workspace / "answers.json").write_text(json.dumps({"repo": "acme/api"}), encoding="utf-8")

    result = runner.invoke(cli, ["resume", run_id, "--answers", "answers.json"])

    assert result.exit_code == 1
    assert "stage analyze failed 3 times, aborting" in result.output
    state = store.load(run_id)
    assert state is not None and state.stage_attempts["analyze"] == 3


def test_run_without_registry_is_rejected(workspace: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "deep-research"])

    assert result.exit_code == 1
    assert "No stage registry configured" in result.output


def test_bad_registry_reference_is_rejected(workspace: Path) -> None:
    runner = CliRunner()

    missing_attr = runner.invoke(
        cli, ["run", "system-review", "--registry", f"{_module(workspace)}:nothing"]
    )
    malformed = runner.invoke(cli, ["run", "system-review", "--registry", "no_colon"])

    assert missing_attr.exit_code == 1
    assert "has no attribute 'nothing'" in missing_attr.output
    assert malformed.exit_code == 1
    assert "module:attribute" in malformed.output


def test_resume_of_unknown_run_fails(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init", "--registry", f"{_module(workspace)}:build"])
    (workspace / "answers.json").write_text("{}", encoding="utf-8")

    result = runner.invoke(cli, ["resume", "system-review-missing", "--answers", "answers.json"])

    assert result.exit_code == 1
    assert "Run system-review-missing not found" in result.output


def test_status_of_unknown_run_fails(workspace: Path) -> None:
    result = CliRunner().invoke(cli, ["status", "deep-research-missing"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_watchdog_once_kills_stale_run(workspace: Path) -> None:
    store = JsonFileStateStore(workspace / ".waypoint")
    stale = PipelineState.new(
        PipelineKind.DEEP_RESEARCH, {}, now=datetime.now(UTC) - timedelta(hours=3)
    )
    fresh = PipelineState.new(PipelineKind.DEEP_RESEARCH, {})
    store.save(stale)
    store.save(fresh)

    result = CliRunner().invoke(cli, ["watchdog", "--once"])

    assert result.exit_code == 0, result.output
    report = json.loads(result.output)
    assert report["checked"] == 2
    assert report["killed"] == 1
    assert report["runs"][0]["run_id"] == stale.run_id
    loaded = store.load(stale.run_id)
    assert loaded is not None and loaded.error == "watchdog: No progress for 2+ hours"
    assert [event["event"] for event in store.read_events()] == ["watchdog_killed"]


def test_continue_recovers_run_interrupted_mid_stage(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init", "--registry", f"{_module(workspace)}:build"])
    store = JsonFileStateStore(workspace / ".waypoint")
    crashed = PipelineState.new(PipelineKind.SYSTEM_REVIEW, {"repo": "acme/api"})
    collected = {"collectors": {"git": {"ok": True, "repo": "acme/before-crash"}}}
    crashed.stage_outputs["collect"] = collected
    crashed.stage_attempts = {"collect": 1, "analyze": 1}
    crashed.current_stage = "analyze"
    store.save(crashed, liveness_status="running")

    result = runner.invoke(cli, ["continue", crashed.run_id])

    assert result.exit_code == 0, result.output
    assert f"Run {crashed.run_id} completed." in result.output
    state = store.load(crashed.run_id)
    assert state is not None
    assert state.stage_outputs["collect"] == collected
    assert state.stage_attempts["collect"] == 1
    assert state.stage_attempts["analyze"] == 2
    assert [entry["stage"] for entry in state.history][0] == "analyze"


def test_continue_of_unknown_run_fails(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init", "--registry", f"{_module(workspace)}:build"])

    result = runner.invoke(cli, ["continue", "system-review-missing"])

    assert result.exit_code == 1
    assert "Run system-review-missing not found" in result.output
