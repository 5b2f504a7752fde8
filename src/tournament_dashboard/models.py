"""Data models for the dashboard."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .errors import CategorizedError, ErrorCategory, ErrorSeverity


class EventLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class OperationKind(str, Enum):
    """One progress slot per pipeline stage."""

    DOWNLOAD = "download"
    TRAINING = "training"
    PREDICTION = "prediction"
    UPLOAD = "upload"


class BodyView(str, Enum):
    """What the middle region of the screen shows."""

    HELP = "help"
    TRAINING = "training"
    MODEL_DETAILS = "model_details"
    SYSTEM_INFO = "system_info"
    WIZARD = "wizard"
    RECOVERY = "recovery"
    LOGS = "logs"


@dataclass(slots=True, frozen=True)
class EventEntry:
    """Immutable event log line. Categorized entries carry both category and severity."""

    timestamp: datetime
    level: EventLevel
    message: str
    category: Optional[ErrorCategory] = None
    severity: Optional[ErrorSeverity] = None

    def __post_init__(self) -> None:
        if (self.category is None) != (self.severity is None):
            raise ValueError("category and severity must be given together")

    @property
    def is_categorized(self) -> bool:
        return self.category is not None

    @classmethod
    def from_error(cls, error: CategorizedError) -> "EventEntry":
        return cls(
            timestamp=error.timestamp,
            level=EventLevel.ERROR,
            message=error.message,
            category=error.category,
            severity=error.severity,
        )


@dataclass(slots=True)
class NetworkStatus:
    is_connected: bool = False
    last_check: Optional[datetime] = None
    latency_ms: Optional[float] = None
    consecutive_failures: int = 0


@dataclass(slots=True)
class SystemMetrics:
    """Host metrics sampled by the health monitor."""

    cpu_percent: float = 0.0
    memory_used_gb: float = 0.0
    memory_total_gb: float = 0.0
    disk_free_gb: float = 0.0
    disk_total_gb: float = 0.0
    threads: int = 0
    uptime_seconds: float = 0.0


@dataclass(slots=True)
class ModelInfo:
    name: str
    is_active: bool = False
    corr: Optional[float] = None
    mmc: Optional[float] = None
    fnc: Optional[float] = None
    sharpe: Optional[float] = None
    stake: Optional[float] = None
    model_type: Optional[str] = None


@dataclass(slots=True)
class TrainingInfo:
    current_model: Optional[str] = None
    epoch: int = 0
    total_epochs: int = 0
    loss: Optional[float] = None
    val_score: Optional[float] = None
    loss_history: list[float] = field(default_factory=list)


MODEL_TYPES = ("XGBoost", "LightGBM", "EvoTrees", "Ensemble")
WIZARD_STEPS = 5


@dataclass(slots=True)
class WizardState:
    """Multi-step new-model form. Only one instance is live at a time."""

    step: int = 1
    model_name: str = ""
    model_type: str = MODEL_TYPES[0]
    learning_rate: float = 0.01
    max_depth: int = 5
    feature_fraction: float = 0.1
    num_rounds: int = 1000
    neutralize: bool = True
    neutralize_proportion: float = 0.5
    selected_field: int = 0


@dataclass(slots=True)
class ProgressSnapshot:
    """Copy of one active progress slot, safe to hand to the renderer."""

    kind: OperationKind
    percent: float
    description: str
    current: Optional[float]
    total: Optional[float]
    unit: str
    started_at: float
    eta_seconds: Optional[float]


@dataclass(slots=True)
class LastKnownGood:
    """Best-effort record written after each successful refresh."""

    timestamp: datetime
    model_name: Optional[str]
    model_metrics: dict[str, Optional[float]]
    network_connected: bool
    api_latency: Optional[float]


@dataclass(slots=True)
class DashboardSnapshot:
    """Serializable view of the dashboard state, taken under the state lock."""

    generated_at: datetime
    running: bool
    paused: bool
    show_help: bool
    view: BodyView
    metrics: SystemMetrics
    network: NetworkStatus
    progress: list[ProgressSnapshot]
    events: list[EventEntry]
    models: list[ModelInfo]
    selected_model: int
    training: TrainingInfo
    wizard: Optional[WizardState]
    command_buffer: Optional[str]
    errors: list[CategorizedError]
    error_total: int
    datasets_completed: list[str]
    recovery_lines: list[str] = field(default_factory=list)
    dropped_frames: int = 0
    error_trend: dict[ErrorCategory, int] = field(default_factory=dict)
    last_submission_id: Optional[str] = None

    @property
    def any_active(self) -> bool:
        return bool(self.progress)

    @property
    def selected(self) -> Optional[ModelInfo]:
        if 0 <= self.selected_model < len(self.models):
            return self.models[self.selected_model]
        return None


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)
