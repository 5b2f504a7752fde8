"""
Per-stage progress tracking with a single-flight guarantee.

Each :class:`OperationKind` has exactly one slot. Starting a kind that is
already active raises :class:`AlreadyActiveError`. Every start bumps the
slot's generation; progress callbacks may pass the generation they were
handed so that late updates from a finished run are discarded. The tracker is
not synchronized; ``DashboardState`` owns the lock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from time import monotonic
from typing import Any

from .errors import CategorizedError, ErrorHistory
from .exceptions import AlreadyActiveError
from .models import OperationKind, ProgressSnapshot


@dataclass(slots=True)
class ProgressState:
    """Progress slot for one operation kind."""

    kind: OperationKind
    active: bool = False
    percent: float = 0.0
    generation: int = 0
    description: str = ""
    current: float | None = None
    total: float | None = None
    unit: str = ""
    started_at: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)

    def reset(self) -> None:
        self.active = False
        self.percent = 0.0
        self.description = ""
        self.current = None
        self.total = None
        self.unit = ""
        self.started_at = 0.0
        self.extra = {}

    def eta_seconds(self, now: float | None = None) -> float | None:
        if not self.active or self.percent <= 0 or self.percent >= 100:
            return None
        elapsed = (now if now is not None else monotonic()) - self.started_at
        return elapsed * (100.0 - self.percent) / self.percent


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


class ProgressTracker:
    """Tracks active/percentage/metadata for each pipeline stage."""

    def __init__(self, *, clock=monotonic) -> None:
        self._clock = clock
        self._slots: dict[OperationKind, ProgressState] = {kind: ProgressState(kind=kind) for kind in OperationKind}

    # --- Transitions -------------------------------------------------------

    def start_operation(self, kind: OperationKind, **meta: Any) -> int:
        """Mark ``kind`` active at 0% and return the new generation token."""
        slot = self._slots[kind]
        if slot.active:
            raise AlreadyActiveError(kind.value)
        slot.reset()
        slot.active = True
        slot.generation += 1
        slot.started_at = self._clock()
        self._apply_meta(slot, meta)
        return slot.generation

    def update_progress(
        self, kind: OperationKind, percent: float, *, generation: int | None = None, **meta: Any
    ) -> bool:
        """
        Record progress for an active operation.

        Returns False (and changes nothing) when the kind is idle or the
        generation belongs to an earlier run. The percentage is clamped to
        [0, 100] and never moves backwards within a run.
        """
        slot = self._slots[kind]
        if not slot.active:
            return False
        if generation is not None and generation != slot.generation:
            return False
        slot.percent = max(slot.percent, clamp_percent(percent))
        self._apply_meta(slot, meta)
        return True

    def complete_operation(self, kind: OperationKind) -> bool:
        """Finish ``kind``. Returns False when it was not running."""
        slot = self._slots[kind]
        if not slot.active:
            return False
        slot.reset()
        return True

    def fail_operation(
        self, kind: OperationKind, fault: BaseException, history: ErrorHistory, *, context: str = ""
    ) -> CategorizedError | None:
        """Classify ``fault`` into ``history`` and return ``kind`` to idle.

        Returns None when the kind was already idle.
        """
        slot = self._slots[kind]
        if not slot.active:
            return None
        error = history.record(fault, context=context or f"{kind.value.capitalize()} failed")
        slot.reset()
        return error

    # --- Aggregated views --------------------------------------------------

    def is_active(self, kind: OperationKind) -> bool:
        return self._slots[kind].active

    def any_active(self) -> bool:
        return any(slot.active for slot in self._slots.values())

    def active_kinds(self) -> list[OperationKind]:
        return [kind for kind, slot in self._slots.items() if slot.active]

    def generation(self, kind: OperationKind) -> int:
        return self._slots[kind].generation

    def get(self, kind: OperationKind) -> ProgressState:
        """Return a copy of the slot for ``kind``."""
        slot = self._slots[kind]
        return ProgressState(
            kind=slot.kind,
            active=slot.active,
            percent=slot.percent,
            generation=slot.generation,
            description=slot.description,
            current=slot.current,
            total=slot.total,
            unit=slot.unit,
            started_at=slot.started_at,
            extra=dict(slot.extra),
        )

    def snapshots(self) -> list[ProgressSnapshot]:
        now = self._clock()
        return [
            ProgressSnapshot(
                kind=slot.kind,
                percent=slot.percent,
                description=slot.description,
                current=slot.current,
                total=slot.total,
                unit=slot.unit,
                started_at=slot.started_at,
                eta_seconds=slot.eta_seconds(now),
            )
            for slot in self._slots.values()
            if slot.active
        ]

    # --- Internal helpers --------------------------------------------------

    @staticmethod
    def _apply_meta(slot: ProgressState, meta: dict[str, Any]) -> None:
        for key in ("description", "current", "total", "unit"):
            if key in meta and meta[key] is not None:
                setattr(slot, key, meta.pop(key))
            else:
                meta.pop(key, None)
        slot.extra.update(meta)
