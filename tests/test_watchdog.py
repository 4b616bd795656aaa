import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from waypoint.config import WatchdogConfig
from waypoint.models import PipelineState, RunStatus, to_iso
from waypoint.pipelines import PipelineKind
from waypoint.state import MemoryStateStore
from waypoint.watchdog import Watchdog

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _store_with(status: str, idle: timedelta) -> tuple[MemoryStateStore, str]:
    store = MemoryStateStore()
    state = PipelineState.new(PipelineKind.DATA_ENRICHMENT, {}, now=NOW - idle)
    state.stage_outputs["discovery"] = {"confirmed_by_user": True}
    state.stage_attempts["discovery"] = 1
    store.save(state, liveness_status=status)
    return store, state.run_id


def test_running_run_idle_past_threshold_is_killed() -> None:
    store, run_id = _store_with("running", timedelta(minutes=121))
    events: list[dict[str, Any]] = []

    report = Watchdog(store, clock=lambda: NOW, event_hook=events.append).scan()

    assert report.to_dict() == {
        "checked": 1,
        "killed": 1,
        "runs": [{"run_id": run_id, "reason": "No progress for 2+ hours", "idle_minutes": 121}],
    }
    state = store.load(run_id)
    assert state is not None
    assert state.status == RunStatus.FAILED
    assert state.error == "watchdog: No progress for 2+ hours"
    assert state.failed_at == to_iso(NOW)
    assert state.stage_outputs == {"discovery": {"confirmed_by_user": True}}
    assert state.stage_attempts == {"discovery": 1}
    assert events == [
        {
            "event": "watchdog_killed",
            "run_id": run_id,
            "reason": "No progress for 2+ hours",
            "idle_minutes": 121,
        }
    ]


def test_running_run_below_threshold_is_left_alone() -> None:
    store, run_id = _store_with("running", timedelta(minutes=119))

    report = Watchdog(store, clock=lambda: NOW).scan()

    assert report.checked == 1
    assert report.killed == 0
    state = store.load(run_id)
    assert state is not None and state.status == RunStatus.RUNNING


def test_threshold_is_strictly_greater() -> None:
    store, _ = _store_with("running", timedelta(hours=2))

    assert Watchdog(store, clock=lambda: NOW).scan().killed == 0


def test_initializing_run_is_killed_after_five_minutes() -> None:
    store, run_id = _store_with("initializing", timedelta(minutes=6))

    report = Watchdog(store, clock=lambda: NOW).scan()

    assert report.killed == 1
    assert report.runs[0].reason == "Stuck in initializing state"
    assert report.runs[0].idle_minutes == 6
    liveness = store.get_liveness(run_id)
    assert liveness is not None
    assert liveness.status == "failed"
    assert liveness.error == "watchdog: Stuck in initializing state"


def test_pending_run_uses_long_threshold() -> None:
    recent, _ = _store_with("pending", timedelta(minutes=6))
    stale, _ = _store_with("pending", timedelta(minutes=150))

    assert Watchdog(recent, clock=lambda: NOW).scan().killed == 0
    report = Watchdog(stale, clock=lambda: NOW).scan()
    assert report.runs[0].reason == "Pending with no progress for 2+ hours"


def test_paused_and_terminal_runs_are_never_killed() -> None:
    for status in ("paused_for_input", "completed", "failed"):
        store, _ = _store_with(status, timedelta(days=3))

        assert Watchdog(store, clock=lambda: NOW).scan().killed == 0


def test_custom_thresholds_change_reason_text() -> None:
    store, _ = _store_with("running", timedelta(minutes=31))
    config = WatchdogConfig(stuck_threshold_seconds=1800.0)

    report = Watchdog(store, config, clock=lambda: NOW).scan()

    assert report.runs[0].reason == "No progress for 30+ minutes"


def test_unreadable_timestamp_is_skipped() -> None:
    store = MemoryStateStore()
    store.touch_liveness("broken-run", "running", NOW)
    store._liveness["broken-run"]["last_update_at"] = "yesterday"

    report = Watchdog(store, clock=lambda: NOW).scan()

    assert report.checked == 1
    assert report.killed == 0


class ExplodingStore(MemoryStateStore):
    def __init__(self) -> None:
        super().__init__()
        self.scans = 0

    def scan_liveness(self):  # type: ignore[override]
        self.scans += 1
        raise OSError("disk unavailable")


def test_run_forever_keeps_going_after_scan_errors() -> None:
    store = ExplodingStore()
    watchdog = Watchdog(store, clock=lambda: NOW)

    async def scenario() -> None:
        stop = asyncio.Event()
        task = asyncio.create_task(watchdog.run_forever(interval_seconds=0.01, stop_event=stop))
        while store.scans < 3:
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())

    assert store.scans >= 3
