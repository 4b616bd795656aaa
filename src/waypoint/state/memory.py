from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from waypoint.models import (
    TERMINAL_STATUSES,
    LivenessRecord,
    LivenessStatus,
    PipelineState,
    RunStatus,
    to_iso,
)
from waypoint.state.base import StateStore


class MemoryStateStore(StateStore):
    """Process-local store. Records are kept serialized so callers never share objects."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, dict[str, Any]] = {}
        self._liveness: dict[str, dict[str, Any]] = {}

    def load(self, run_id: str) -> PipelineState | None:
        with self._lock:
            payload = self._states.get(run_id)
        if payload is None:
            return None
        return PipelineState.from_dict(payload)

    def save(self, state: PipelineState, *, liveness_status: str | None = None) -> None:
        record = state.liveness(liveness_status)
        with self._lock:
            self._states[state.run_id] = state.to_dict()
            self._liveness[state.run_id] = record.to_dict()

    def touch_liveness(self, run_id: str, status: str, at: datetime) -> None:
        with self._lock:
            current = self._liveness.get(run_id, {"run_id": run_id})
            current["status"] = status
            current["last_update_at"] = to_iso(at)
            self._liveness[run_id] = current

    def get_liveness(self, run_id: str) -> LivenessRecord | None:
        with self._lock:
            payload = self._liveness.get(run_id)
        return LivenessRecord.from_dict(payload) if payload else None

    def scan_liveness(self) -> list[LivenessRecord]:
        with self._lock:
            payloads = [dict(item) for item in self._liveness.values()]
        return [LivenessRecord.from_dict(item) for item in payloads]

    def force_fail(self, run_id: str, reason: str, at: datetime) -> None:
        stamp = to_iso(at)
        with self._lock:
            record = self._liveness.get(run_id, {"run_id": run_id, "last_update_at": stamp})
            record.update(status=str(LivenessStatus.FAILED), error=reason, failed_at=stamp)
            self._liveness[run_id] = record
            state = self._states.get(run_id)
            if state is not None:
                state.update(status=str(RunStatus.FAILED), error=reason, failed_at=stamp)

    def list_runs(self, *, active_only: bool = False) -> list[str]:
        with self._lock:
            items = list(self._states.items())
        if not active_only:
            return sorted(run_id for run_id, _ in items)
        terminal = {str(status) for status in TERMINAL_STATUSES}
        return sorted(run_id for run_id, payload in items if payload.get("status") not in terminal)
