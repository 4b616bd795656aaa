from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from waypoint.config import WatchdogConfig
from waypoint.errors import WatchdogForcedFailure
from waypoint.models import LivenessRecord, LivenessStatus, parse_iso, utcnow
from waypoint.state.base import StateStore

logger = logging.getLogger(__name__)

WatchdogEventHook = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class KilledRun:
    run_id: str
    reason: str
    idle_minutes: int

    def to_dict(self) -> dict[str, Any]:
        return {"run_id": self.run_id, "reason": self.reason, "idle_minutes": self.idle_minutes}


@dataclass(slots=True)
class WatchdogReport:
    checked: int = 0
    killed: int = 0
    runs: list[KilledRun] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "killed": self.killed,
            "runs": [run.to_dict() for run in self.runs],
        }


def _describe(seconds: float) -> str:
    if seconds >= 3600 and seconds % 3600 == 0:
        hours = int(seconds // 3600)
        return f"{hours}+ hour" if hours == 1 else f"{hours}+ hours"
    return f"{int(seconds // 60)}+ minutes"


class Watchdog:
    """Force-fails runs whose liveness record stopped moving.

    The watchdog reads only the liveness table and writes only through
    ``StateStore.force_fail``; it never touches outputs or attempt counters.
    Paused and terminal runs are never considered stuck.
    """

    def __init__(
        self,
        store: StateStore,
        config: WatchdogConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        event_hook: WatchdogEventHook | None = None,
    ) -> None:
        self.store = store
        self.config = config or WatchdogConfig()
        self.clock = clock
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def stuck_reason(self, record: LivenessRecord, idle_seconds: float) -> str | None:
        initializing_limit = self.config.initializing_timeout_seconds
        stuck_limit = self.config.stuck_threshold_seconds
        if record.status == LivenessStatus.INITIALIZING and idle_seconds > initializing_limit:
            return "Stuck in initializing state"
        if record.status == LivenessStatus.RUNNING and idle_seconds > stuck_limit:
            return f"No progress for {_describe(stuck_limit)}"
        if record.status == LivenessStatus.PENDING and idle_seconds > stuck_limit:
            return f"Pending with no progress for {_describe(stuck_limit)}"
        return None

    def scan(self) -> WatchdogReport:
        now = self.clock()
        records = self.store.scan_liveness()
        report = WatchdogReport(checked=len(records))
        for record in records:
            try:
                last_update = parse_iso(record.last_update_at)
            except ValueError:
                logger.warning(
                    "Skipping run %s: unreadable last_update_at %r",
                    record.run_id,
                    record.last_update_at,
                )
                continue
            idle_seconds = (now - last_update).total_seconds()
            reason = self.stuck_reason(record, idle_seconds)
            if reason is None:
                continue

            failure = WatchdogForcedFailure(reason)
            self.store.force_fail(record.run_id, str(failure), now)
            killed = KilledRun(
                run_id=record.run_id,
                reason=reason,
                idle_minutes=int(idle_seconds / 60 + 0.5),
            )
            report.killed += 1
            report.runs.append(killed)
            logger.warning(
                "Killed stuck run %s: %s (idle: %smin)",
                killed.run_id,
                reason,
                killed.idle_minutes,
            )
            self._emit({"event": "watchdog_killed", **killed.to_dict()})
        return report

    async def run_forever(
        self,
        *,
        interval_seconds: float | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        interval = interval_seconds or self.config.interval_seconds
        stop = stop_event or asyncio.Event()
        logger.info("Watchdog started (interval: %ss)", interval)
        while not stop.is_set():
            try:
                report = await asyncio.to_thread(self.scan)
            except Exception:
                logger.exception("Watchdog scan failed")
            else:
                if report.killed:
                    logger.info("Watchdog killed %s stuck run(s)", report.killed)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                continue
        logger.info("Watchdog stopped")
