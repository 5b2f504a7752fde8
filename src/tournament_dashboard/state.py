"""
Shared dashboard state.

``DashboardState`` is the only object shared between the render loop, the
input dispatcher, the stage workers and the health monitor. Every read and
write goes through one re-entrant lock because collaborator callbacks fire on
executor threads, not just on the event loop. Readers take a
:class:`DashboardSnapshot` and render from that copy, so a frame never shows a
percentage without its matching description.
"""

from __future__ import annotations

import threading
import time
from copy import copy
from datetime import timedelta
from dataclasses import replace
from typing import Callable, Iterable, TypeVar

from loguru import logger

from .errors import CategorizedError, ErrorCategory, ErrorHistory, ErrorSeverity
from .events import EventLog
from .exceptions import OperationCancelled
from .models import (
    BodyView,
    DashboardSnapshot,
    EventEntry,
    EventLevel,
    ModelInfo,
    NetworkStatus,
    OperationKind,
    SystemMetrics,
    TrainingInfo,
    WizardState,
    utcnow,
)
from .progress import ProgressTracker
from .settings import DashboardConfig

T = TypeVar("T")

ERROR_TREND_WINDOW = timedelta(hours=1)

_LOG_LEVELS = {
    EventLevel.INFO: "INFO",
    EventLevel.SUCCESS: "SUCCESS",
    EventLevel.WARNING: "WARNING",
    EventLevel.ERROR: "ERROR",
}


class DashboardState:
    """Aggregate root for everything the dashboard displays and controls."""

    def __init__(self, config: DashboardConfig, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self.config = config
        self.started_at = clock()

        self.running = True
        self.paused = False
        self.show_help = True
        self.force_render = True
        self.view = BodyView.HELP
        self.command_buffer: str | None = None
        self.wizard: WizardState | None = None
        self.recovery_lines: list[str] = []
        self.dropped_frames = 0

        self.metrics = SystemMetrics()
        self.network = NetworkStatus()
        self.models: list[ModelInfo] = [ModelInfo(name=name) for name in config.models]
        self.selected_model = 0
        self.training = TrainingInfo(total_epochs=config.default_epochs)
        self.datasets_completed: set[str] = set()
        self.predictions: object | None = None
        self.last_submission_id: str | None = None

        self.progress = ProgressTracker(clock=clock)
        self.events = EventLog(config.max_events)
        self.errors = ErrorHistory(config.max_errors)

        self._release_hooks: list[Callable[[], None]] = []
        self._released = False

    # --- Core contract -----------------------------------------------------

    def snapshot(self) -> DashboardSnapshot:
        """Copy everything the renderer needs while holding the lock."""
        with self._lock:
            return DashboardSnapshot(
                generated_at=utcnow(),
                running=self.running,
                paused=self.paused,
                show_help=self.show_help,
                view=self.view,
                metrics=copy(self.metrics),
                network=copy(self.network),
                progress=self.progress.snapshots(),
                events=list(self.events),
                models=[copy(model) for model in self.models],
                selected_model=self.selected_model,
                training=replace(self.training, loss_history=list(self.training.loss_history)),
                wizard=copy(self.wizard) if self.wizard is not None else None,
                command_buffer=self.command_buffer,
                errors=self.errors.errors(),
                error_total=self.errors.total,
                datasets_completed=sorted(self.datasets_completed),
                recovery_lines=list(self.recovery_lines),
                dropped_frames=self.dropped_frames,
                error_trend=self.errors.trend(ERROR_TREND_WINDOW),
                last_submission_id=self.last_submission_id,
            )

    def mutate(self, fn: Callable[["DashboardState"], T]) -> T:
        """Apply ``fn`` to the state under the lock and return its result."""
        with self._lock:
            return fn(self)

    def add_release_hook(self, hook: Callable[[], None]) -> None:
        """Register a callable run once by :meth:`shutdown`, e.g. restoring the terminal."""
        with self._lock:
            self._release_hooks.append(hook)

    def shutdown(self) -> None:
        """Stop every loop and release the terminal. Safe to call more than once."""
        with self._lock:
            self.running = False
            if self._released:
                return
            self._released = True
            hooks = list(self._release_hooks)
        for hook in hooks:
            try:
                hook()
            except Exception as e:
                logger.exception(f"Release hook failed during shutdown: {e}")

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self.running

    def uptime(self) -> float:
        return self._clock() - self.started_at

    # --- Cooperative cancellation -----------------------------------------

    def cancel_requested(self) -> bool:
        with self._lock:
            return not self.running

    def checkpoint(self, poll: float = 0.1) -> None:
        """Called by stage workers between files/epochs.

        Raises :class:`OperationCancelled` once the dashboard is stopping and
        blocks while the dashboard is paused.
        """
        while True:
            with self._lock:
                if not self.running:
                    raise OperationCancelled("dashboard is shutting down")
                if not self.paused:
                    return
            time.sleep(poll)

    # --- Events and errors -------------------------------------------------

    def add_event(
        self,
        level: EventLevel,
        message: str,
        *,
        category: ErrorCategory | None = None,
        severity: ErrorSeverity | None = None,
    ) -> EventEntry:
        entry = EventEntry(timestamp=utcnow(), level=level, message=message, category=category, severity=severity)
        with self._lock:
            self.events.append(entry)
            self.force_render = True
        logger.log(_LOG_LEVELS[level], f"[event] {message}")
        return entry

    def record_error(self, fault: BaseException, *, context: str = "") -> CategorizedError:
        """Classify a fault that happened outside a progress slot."""
        with self._lock:
            error = self.errors.record(fault, context=context)
            self.events.append(EventEntry.from_error(error))
            self.force_render = True
        logger.error(f"[{error.category.value}/{error.severity.value}] {error.technical_details}")
        return error

    def clear_events(self) -> None:
        with self._lock:
            self.events.clear()
            self.force_render = True

    # --- Progress ----------------------------------------------------------

    def start_operation(self, kind: OperationKind, **meta) -> int:
        """Start ``kind``; raises ``AlreadyActiveError`` when it is already running."""
        with self._lock:
            generation = self.progress.start_operation(kind, **meta)
            self.force_render = True
        logger.debug(f"Started {kind.value} operation (generation {generation})")
        return generation

    def update_progress(self, kind: OperationKind, percent: float, *, generation: int | None = None, **meta) -> bool:
        with self._lock:
            return self.progress.update_progress(kind, percent, generation=generation, **meta)

    def complete_operation(self, kind: OperationKind, message: str | None = None) -> bool:
        """Finish ``kind`` and emit one success event. No-op when idle."""
        with self._lock:
            if not self.progress.complete_operation(kind):
                return False
            self.events.append(
                EventEntry(
                    timestamp=utcnow(),
                    level=EventLevel.SUCCESS,
                    message=message or f"{kind.value.capitalize()} complete",
                )
            )
            self.force_render = True
        logger.success(message or f"{kind.value} complete")
        return True

    def fail_operation(self, kind: OperationKind, fault: BaseException) -> CategorizedError | None:
        """Classify ``fault``, emit an error event and return ``kind`` to idle."""
        with self._lock:
            error = self.progress.fail_operation(kind, fault, self.errors)
            if error is None:
                return None
            self.events.append(EventEntry.from_error(error))
            self.force_render = True
        logger.error(f"{kind.value} failed [{error.category.value}/{error.severity.value}]: {error.technical_details}")
        return error

    def cancel_operation(self, kind: OperationKind) -> bool:
        """Return ``kind`` to idle after a cooperative cancellation."""
        with self._lock:
            if not self.progress.complete_operation(kind):
                return False
            self.events.append(
                EventEntry(timestamp=utcnow(), level=EventLevel.WARNING, message=f"{kind.value.capitalize()} cancelled")
            )
            self.force_render = True
        logger.warning(f"{kind.value} cancelled")
        return True

    def any_active(self) -> bool:
        with self._lock:
            return self.progress.any_active()

    def is_active(self, kind: OperationKind) -> bool:
        with self._lock:
            return self.progress.is_active(kind)

    # --- Datasets ----------------------------------------------------------

    def mark_dataset_complete(self, name: str) -> None:
        with self._lock:
            self.datasets_completed.add(name)

    def take_completed_datasets(self, required: Iterable[str]) -> bool:
        """Return True and reset the completed set when every required dataset is present."""
        required = set(required)
        with self._lock:
            if not required.issubset(self.datasets_completed):
                return False
            self.datasets_completed.clear()
            return True

    # --- Metrics, network, models -----------------------------------------

    def update_metrics(self, metrics: SystemMetrics) -> None:
        with self._lock:
            self.metrics = metrics

    def update_network(self, success: bool, latency_ms: float | None = None) -> NetworkStatus:
        with self._lock:
            self.network.last_check = utcnow()
            self.network.is_connected = success
            if success:
                self.network.latency_ms = latency_ms
                self.network.consecutive_failures = 0
            else:
                self.network.latency_ms = None
                self.network.consecutive_failures += 1
            return copy(self.network)

    def set_model_performance(self, name: str, **values) -> None:
        with self._lock:
            for model in self.models:
                if model.name == name:
                    for key, value in values.items():
                        setattr(model, key, value)
                    model.is_active = True
                    break

    def record_epoch(self, epoch: int, total: int, loss: float | None, val_score: float | None = None) -> None:
        with self._lock:
            self.training.epoch = epoch
            self.training.total_epochs = total
            self.training.loss = loss
            self.training.val_score = val_score
            if loss is not None:
                self.training.loss_history.append(loss)
                del self.training.loss_history[:-200]

    # --- View flags --------------------------------------------------------

    def request_render(self) -> None:
        with self._lock:
            self.force_render = True

    def consume_render_request(self) -> bool:
        with self._lock:
            requested = self.force_render
            self.force_render = False
            return requested

    def toggle_pause(self) -> bool:
        with self._lock:
            self.paused = not self.paused
            paused = self.paused
        self.add_event(EventLevel.INFO, "Dashboard paused" if paused else "Dashboard resumed")
        return paused

    def toggle_help(self) -> bool:
        with self._lock:
            self.show_help = not self.show_help
            self.view = BodyView.HELP if self.show_help else self._default_view()
            self.force_render = True
            return self.show_help

    def set_view(self, view: BodyView) -> None:
        with self._lock:
            self.view = view
            self.show_help = view is BodyView.HELP
            self.force_render = True

    def select_model(self, delta: int) -> None:
        with self._lock:
            if self.models:
                self.selected_model = max(0, min(len(self.models) - 1, self.selected_model + delta))
            self.force_render = True

    def set_recovery_report(self, lines: list[str]) -> None:
        with self._lock:
            self.recovery_lines = list(lines)
            self.view = BodyView.RECOVERY
            self.show_help = False
            self.force_render = True

    def record_dropped_frame(self) -> None:
        with self._lock:
            self.dropped_frames += 1

    def _default_view(self) -> BodyView:
        return BodyView.TRAINING if self.progress.is_active(OperationKind.TRAINING) else BodyView.MODEL_DETAILS
