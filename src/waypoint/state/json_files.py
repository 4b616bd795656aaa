from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from waypoint.errors import StateStoreError
from waypoint.models import (
    TERMINAL_STATUSES,
    LivenessRecord,
    LivenessStatus,
    PipelineState,
    RunStatus,
    to_iso,
    utcnow,
)
from waypoint.state.base import StateStore


class JsonFileStateStore(StateStore):
    """Stores each run as ``runs/<run_id>/state.json`` and liveness in ``liveness.json``.

    Every file is a versioned envelope (``schema_version``, ``revision``,
    ``updated_at``, ``data``) written through a temp file and an atomic rename.
    Writers serialize on a lock file in the store root.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.root = root.resolve()
        self.runs_dir = self.root / "runs"
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self.liveness_file = self.root / "liveness.json"
        self.lock_file = self.root / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def run_dir(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or "\\" in run_id or run_id in {".", ".."}:
            raise StateStoreError(f"Invalid run id: {run_id!r}")
        return self.runs_dir / run_id

    def _state_file(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "state.json"

    @contextmanager
    def _state_lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _read_raw_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt state file: {path}") from exc

    def _read_envelope(self, path: Path, default: Any) -> dict[str, Any]:
        raw = self._read_raw_json(path)
        if (
            isinstance(raw, dict)
            and "schema_version" in raw
            and "data" in raw
            and "revision" in raw
        ):
            return {
                "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw.get("revision") or 1),
                "updated_at": raw.get("updated_at") or to_iso(utcnow()),
                "data": raw.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": to_iso(utcnow()),
            "data": default if raw is None else raw,
        }

    def _write_envelope(self, path: Path, data: Any, previous_revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": previous_revision + 1,
            "updated_at": to_iso(utcnow()),
            "data": data,
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_text(json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def _update(self, path: Path, updater: Callable[[Any], Any], default: Any) -> Any:
        with self._state_lock():
            current = self._read_envelope(path, default)
            updated = updater(current["data"])
            self._write_envelope(path, updated, int(current["revision"]))
            return updated

    def _update_liveness_table(self, updater: Callable[[dict[str, Any]], None]) -> None:
        def _apply(payload: Any) -> dict[str, Any]:
            table = payload if isinstance(payload, dict) else {}
            updater(table)
            return table

        self._update(self.liveness_file, _apply, default={})

    def _read_liveness_table(self) -> dict[str, Any]:
        table = self._read_envelope(self.liveness_file, {})["data"]
        return table if isinstance(table, dict) else {}

    def load(self, run_id: str) -> PipelineState | None:
        path = self._state_file(run_id)
        if not path.exists():
            return None
        payload = self._read_envelope(path, None)["data"]
        if not isinstance(payload, dict):
            return None
        try:
            return PipelineState.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(f"Unreadable state for run {run_id}: {exc}") from exc

    def save(self, state: PipelineState, *, liveness_status: str | None = None) -> None:
        self._update(self._state_file(state.run_id), lambda _: state.to_dict(), default=None)
        record = state.liveness(liveness_status)

        def _write(table: dict[str, Any]) -> None:
            table[state.run_id] = record.to_dict()

        self._update_liveness_table(_write)

    def touch_liveness(self, run_id: str, status: str, at: datetime) -> None:
        def _write(table: dict[str, Any]) -> None:
            current = table.get(run_id)
            if not isinstance(current, dict):
                current = {"run_id": run_id}
            current["status"] = status
            current["last_update_at"] = to_iso(at)
            table[run_id] = current

        self._update_liveness_table(_write)

    def get_liveness(self, run_id: str) -> LivenessRecord | None:
        payload = self._read_liveness_table().get(run_id)
        if not isinstance(payload, dict):
            return None
        return LivenessRecord.from_dict(payload)

    def scan_liveness(self) -> list[LivenessRecord]:
        records: list[LivenessRecord] = []
        for payload in self._read_liveness_table().values():
            if isinstance(payload, dict) and payload.get("run_id"):
                records.append(LivenessRecord.from_dict(payload))
        return records

    def force_fail(self, run_id: str, reason: str, at: datetime) -> None:
        stamp = to_iso(at)

        def _write(table: dict[str, Any]) -> None:
            current = table.get(run_id)
            if not isinstance(current, dict):
                current = {"run_id": run_id, "last_update_at": stamp}
            current.update(status=str(LivenessStatus.FAILED), error=reason, failed_at=stamp)
            table[run_id] = current

        self._update_liveness_table(_write)

        state_path = self._state_file(run_id)
        if not state_path.exists():
            return

        def _fail_state(payload: Any) -> Any:
            if not isinstance(payload, dict):
                return payload
            payload.update(status=str(RunStatus.FAILED), error=reason, failed_at=stamp)
            return payload

        self._update(state_path, _fail_state, default=None)

    def list_runs(self, *, active_only: bool = False) -> list[str]:
        run_ids = sorted(
            path.parent.name for path in self.runs_dir.glob("*/state.json") if path.is_file()
        )
        if not active_only:
            return run_ids
        terminal = {str(status) for status in TERMINAL_STATUSES}
        active: list[str] = []
        for run_id in run_ids:
            payload = self._read_envelope(self._state_file(run_id), None)["data"]
            if isinstance(payload, dict) and payload.get("status") not in terminal:
                active.append(run_id)
        return active

    def append_event(self, event: dict[str, Any], *, limit: int = 200) -> None:
        """Append ``event`` to the bounded event log kept beside the liveness table."""

        def _apply(payload: Any) -> list[Any]:
            events = payload if isinstance(payload, list) else []
            events.append(event)
            return events[-limit:]

        self._update(self.root / "events.json", _apply, default=[])

    def read_events(self) -> list[dict[str, Any]]:
        events = self._read_envelope(self.root / "events.json", [])["data"]
        return events if isinstance(events, list) else []
