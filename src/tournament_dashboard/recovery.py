"""
Diagnostic report shown when something goes wrong.

The report is assembled from independent collectors. A collector that raises is
replaced by a one-line note so that a broken subsystem never hides the rest
of the report.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from loguru import logger
from rich.console import Console, Group
from rich.panel import Panel
from rich.text import Text

from .errors import ErrorCategory, classify, friendly_message, summarize
from .health import load_last_known_good, sample_metrics
from .models import DashboardSnapshot, OperationKind
from .state import DashboardState
from .utils import format_bytes, format_duration, format_metric, mask_secret


@dataclass(slots=True)
class ReportSection:
    title: str
    lines: list[str] = field(default_factory=list)
    failed: bool = False


RECOVERY_KEYS = [
    "r  refresh model data and network status",
    "d  download datasets again",
    "s  run the full pipeline",
    "c  clear the event log",
    "l  show technical error details",
    "h  back to the help screen",
    "q  quit",
]

_SUGGESTIONS: dict[ErrorCategory, list[str]] = {
    ErrorCategory.NETWORK: [
        "Check your internet connection and any proxy settings.",
        "Verify NETWORK_CHECK_URL is reachable from this machine.",
    ],
    ErrorCategory.AUTH: [
        "Check NUMERAI_PUBLIC_ID and NUMERAI_SECRET_KEY in your environment or .env file.",
        "Regenerate the API key if it has been revoked.",
    ],
    ErrorCategory.API: [
        "The tournament API returned an error; retry in a few minutes.",
        "Check the tournament status page for outages.",
    ],
    ErrorCategory.TIMEOUT: [
        "The service is slow to answer; raise NETWORK_TIMEOUT or retry later.",
    ],
    ErrorCategory.VALIDATION: [
        "Check model parameters and the values entered in the wizard.",
    ],
    ErrorCategory.DATA: [
        "Re-download the datasets with 'd' or /download.",
        "Check that DATA_DIR points at a readable directory with free space.",
    ],
    ErrorCategory.SYSTEM: [
        "Check the log file for the full traceback.",
    ],
}


class RecoveryReporter:
    """Builds the diagnostic report from the dashboard state."""

    def __init__(self, state: DashboardState, *, recent_events: int = 10) -> None:
        self.state = state
        self._config = state.config
        self._recent_events = recent_events

    # --- Public API --------------------------------------------------------

    def build(self, fault: BaseException | None = None) -> list[ReportSection]:
        snapshot = self.state.snapshot()
        collectors: list[tuple[str, Callable[[], list[str]]]] = [
            ("ERROR DETAILS", lambda: self._error_details(fault, snapshot)),
            ("SYSTEM DIAGNOSTICS", lambda: self._system_diagnostics(snapshot)),
            ("CONFIGURATION STATUS", self._configuration_status),
            ("LOCAL DATA FILES", self._local_data_files),
            ("LAST KNOWN GOOD STATE", self._last_known_good),
            ("NETWORK STATUS", lambda: self._network_status(snapshot)),
            ("TROUBLESHOOTING SUGGESTIONS", lambda: self._suggestions(fault, snapshot)),
            ("RECOVERY COMMANDS", lambda: list(RECOVERY_KEYS)),
            ("RECENT EVENTS", lambda: self._events(snapshot)),
            ("CURRENT MODEL STATUS", lambda: self._model_status(snapshot)),
        ]
        sections = []
        for title, collect in collectors:
            try:
                sections.append(ReportSection(title, collect()))
            except Exception as e:
                logger.warning(f"Recovery section {title!r} failed: {e}")
                sections.append(ReportSection(title, [f"(unavailable: {summarize(e)})"], failed=True))
        return sections

    def report(self, fault: BaseException | None = None) -> list[ReportSection]:
        """Build the report, show it in the body view and write it to the log."""
        sections = self.build(fault)
        lines = render_lines(sections)
        self.state.set_recovery_report(lines)
        logger.error("Recovery report\n" + "\n".join(lines))
        return sections

    # --- Sections ------------------------------------------------------------

    def _error_details(self, fault: BaseException | None, snapshot: DashboardSnapshot) -> list[str]:
        if fault is not None:
            classification = classify(fault)
            raw = summarize(fault)
            lines = [
                f"Error: {raw}",
                f"Category: {classification.category.value}  Severity: {classification.severity.value}",
                f"Message: {friendly_message(classification.category, raw)}",
            ]
            if fault.__traceback__ is not None:
                frames = traceback.format_tb(fault.__traceback__)[-3:]
                lines.append("Traceback (most recent call last):")
                lines.extend(line.rstrip() for frame in frames for line in frame.splitlines())
            return lines
        if snapshot.errors:
            latest = snapshot.errors[-1]
            return [
                f"Last error: {latest.technical_details}",
                f"Category: {latest.category.value}  Severity: {latest.severity.value}",
                f"Message: {latest.message}",
                f"Errors recorded this session: {snapshot.error_total}",
            ]
        return ["No errors recorded this session."]

    def _system_diagnostics(self, snapshot: DashboardSnapshot) -> list[str]:
        metrics = sample_metrics(self.state.uptime(), disk_path=self._config.data_dir)
        return [
            f"CPU: {metrics.cpu_percent:.1f}%",
            f"Memory: {metrics.memory_used_gb:.1f} / {metrics.memory_total_gb:.1f} GB",
            f"Disk free: {metrics.disk_free_gb:.1f} / {metrics.disk_total_gb:.1f} GB",
            f"Threads: {metrics.threads}",
            f"Uptime: {format_duration(metrics.uptime_seconds)}",
            f"Dropped frames: {snapshot.dropped_frames}",
        ]

    def _configuration_status(self) -> list[str]:
        config = self._config
        return [
            f"Public ID: {mask_secret(config.public_id)}",
            f"Secret key: {mask_secret(config.secret_key)}",
            f"Models: {', '.join(config.models) or 'none configured'}",
            f"Data directory: {config.data_dir} ({_exists(config.data_dir)})",
            f"Model directory: {config.model_dir} ({_exists(config.model_dir)})",
            f"Log directory: {config.log_dir} ({_exists(config.log_dir)})",
            f"Auto-train after download: {_on_off(config.auto_train_after_download)}",
            f"Auto-predict after training: {_on_off(config.auto_predict_after_train)}",
            f"Auto-submit: {_on_off(config.auto_submit)}",
        ]

    def _local_data_files(self) -> list[str]:
        data_dir = self._config.data_dir
        if not data_dir.is_dir():
            return [f"{data_dir} does not exist"]
        files = sorted(p for p in data_dir.iterdir() if p.is_file() and p.suffix in (".parquet", ".csv", ".json"))
        if not files:
            return [f"No data files in {data_dir}"]
        return [f"{p.name}: {format_bytes(p.stat().st_size)}" for p in files]

    def _last_known_good(self) -> list[str]:
        record = load_last_known_good(self._config.last_known_good_path)
        if record is None:
            return ["No prior state recorded."]
        metrics = ", ".join(f"{k}={format_metric(v)}" for k, v in record.model_metrics.items()) or "none"
        latency = f"{record.api_latency:.0f} ms" if record.api_latency is not None else "—"
        return [
            f"Recorded: {record.timestamp.astimezone().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Model: {record.model_name or '—'} ({metrics})",
            f"Network: {'connected' if record.network_connected else 'disconnected'}, API latency {latency}",
        ]

    def _network_status(self, snapshot: DashboardSnapshot) -> list[str]:
        network = snapshot.network
        last_check = network.last_check.astimezone().strftime("%H:%M:%S") if network.last_check else "never"
        latency = f"{network.latency_ms:.0f} ms" if network.latency_ms is not None else "—"
        lines = [
            f"Connected: {'yes' if network.is_connected else 'no'}",
            f"Last check: {last_check}",
            f"API latency: {latency}",
            f"Consecutive failures: {network.consecutive_failures}",
        ]
        related = [
            event
            for event in snapshot.events
            if event.category is ErrorCategory.NETWORK or "network" in event.message.lower()
        ][-5:]
        if related:
            lines.append("Recent network events:")
            lines.extend(f"  {e.timestamp.astimezone().strftime('%H:%M:%S')} {e.message}" for e in related)
        return lines

    def _suggestions(self, fault: BaseException | None, snapshot: DashboardSnapshot) -> list[str]:
        categories: list[ErrorCategory] = []
        if fault is not None:
            categories.append(classify(fault).category)
        for error in reversed(snapshot.errors[-5:]):
            if error.category not in categories:
                categories.append(error.category)
        suggestions: list[str] = []
        for category in categories:
            suggestions.extend(s for s in _SUGGESTIONS[category] if s not in suggestions)
        if not self._config.has_credentials:
            suggestions.append("No API credentials configured; submissions will fail until they are set.")
        if not snapshot.network.is_connected and snapshot.network.consecutive_failures:
            suggestions.append("The tournament API has not answered recently; press 'r' once the network is back.")
        if snapshot.paused:
            suggestions.append("The dashboard is paused; press 'p' to resume.")
        if not suggestions:
            suggestions.append("No problems detected. Press 'h' to return to the help screen.")
        return suggestions

    def _events(self, snapshot: DashboardSnapshot) -> list[str]:
        events = snapshot.events[-self._recent_events :]
        if not events:
            return ["No events."]
        return [f"{e.timestamp.astimezone().strftime('%H:%M:%S')} [{e.level.value}] {e.message}" for e in events]

    def _model_status(self, snapshot: DashboardSnapshot) -> list[str]:
        lines = []
        for progress in snapshot.progress:
            label = "DOWNLOADING" if progress.kind is OperationKind.DOWNLOAD else progress.kind.value.upper()
            lines.append(f"{label}: {progress.description} {progress.percent:.0f}%")
        for model in snapshot.models:
            lines.append(
                f"{model.name}: {'active' if model.is_active else 'inactive'}  "
                f"corr={format_metric(model.corr)} mmc={format_metric(model.mmc)} "
                f"fnc={format_metric(model.fnc)} sharpe={format_metric(model.sharpe, 2)}"
            )
        if snapshot.training.current_model:
            training = snapshot.training
            lines.append(
                f"Last training: {training.current_model} epoch {training.epoch}/{training.total_epochs}"
                f" loss={format_metric(training.loss)}"
            )
        return lines or ["No models configured."]


def _exists(path: Path) -> str:
    return "exists" if path.exists() else "missing"


def _on_off(flag: bool) -> str:
    return "on" if flag else "off"


def render_lines(sections: list[ReportSection]) -> list[str]:
    """Flatten the report into plain lines for the body view."""
    lines: list[str] = []
    for section in sections:
        lines.append(section.title)
        lines.extend(f"  {line}" for line in section.lines)
        lines.append("")
    return lines[:-1] if lines else lines


def print_report(sections: list[ReportSection], console: Console | None = None) -> None:
    """Print the report to a regular console, e.g. after the dashboard has exited."""
    console = console or Console(stderr=True)
    panels = [
        Panel(
            Text("\n".join(section.lines)),
            title=section.title,
            border_style="red" if section.failed or section.title == "ERROR DETAILS" else "cyan",
            padding=(0, 1),
        )
        for section in sections
    ]
    console.print(Group(*panels))


def recent_error_lines(snapshot: DashboardSnapshot, limit: int = 20) -> list[str]:
    """Technical details of recent errors, newest last, for the detailed log view."""
    errors = snapshot.errors[-limit:]
    if not errors:
        return ["No errors recorded."]
    return [
        f"{e.timestamp.astimezone().strftime('%H:%M:%S')} {e.category.value}/{e.severity.value} "
        f"#{e.count}: {e.technical_details}"
        for e in errors
    ]

