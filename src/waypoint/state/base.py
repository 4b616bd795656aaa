from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from waypoint.models import LivenessRecord, PipelineState


class StateStore(ABC):
    """Durable home of one PipelineState per run plus the liveness table.

    Implementations must make ``save`` a read-modify-write per run id and keep
    the liveness projection in a table that can be scanned without loading
    state blobs.
    """

    @abstractmethod
    def load(self, run_id: str) -> PipelineState | None:
        """Return the persisted state or ``None`` when the run is unknown."""

    @abstractmethod
    def save(self, state: PipelineState, *, liveness_status: str | None = None) -> None:
        """Persist ``state`` and refresh its liveness record."""

    @abstractmethod
    def touch_liveness(self, run_id: str, status: str, at: datetime) -> None:
        """Write only the liveness record of ``run_id``."""

    @abstractmethod
    def get_liveness(self, run_id: str) -> LivenessRecord | None:
        """Return one liveness record."""

    @abstractmethod
    def scan_liveness(self) -> list[LivenessRecord]:
        """Return every liveness record."""

    @abstractmethod
    def force_fail(self, run_id: str, reason: str, at: datetime) -> None:
        """Terminal transition to ``failed``; must not touch outputs or attempts."""

    @abstractmethod
    def list_runs(self, *, active_only: bool = False) -> list[str]:
        """Return known run ids, optionally only non-terminal ones."""
