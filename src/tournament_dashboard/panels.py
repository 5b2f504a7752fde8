"""Rich panels for the header, body and footer regions of the dashboard."""

from __future__ import annotations

import io

from rich.align import Align
from rich.console import Console, Group, RenderableType
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from .chart import plot, sparkline
from .errors import ErrorSeverity
from .models import (
    MODEL_TYPES,
    BodyView,
    DashboardSnapshot,
    EventEntry,
    EventLevel,
    OperationKind,
    ProgressSnapshot,
    WizardState,
)
from .recovery import recent_error_lines
from .utils import SUBTITLE, TITLE, format_count, format_duration, format_metric, truncate

KEY_BINDINGS = [
    ("q", "Quit"),
    ("p", "Pause / resume"),
    ("s", "Start full pipeline"),
    ("d", "Download datasets"),
    ("t", "Train model"),
    ("u", "Upload predictions"),
    ("r", "Refresh models and network"),
    ("n", "New model wizard"),
    ("m", "Model details"),
    ("i", "System info"),
    ("e", "Error report"),
    ("l", "Detailed error log"),
    ("c", "Clear events"),
    ("h", "Toggle help"),
    ("↑ / ↓", "Select model"),
    ("Enter", "Show selected model"),
    ("/", "Command mode"),
]

COMMAND_HELP = [
    ("/download", "Download datasets"),
    ("/train", "Train the selected model"),
    ("/predict", "Generate predictions"),
    ("/submit", "Submit predictions"),
    ("/stake <amount>", "Set the selected model's stake"),
    ("/pipeline", "Run every stage in order"),
    ("/refresh", "Refresh models and network"),
    ("/pause  /resume", "Pause or resume"),
    ("/diag", "Full diagnostic report"),
    ("/logs", "Technical error details"),
    ("/clear", "Clear events"),
    ("/help", "This screen"),
    ("/quit  /exit", "Quit"),
]

STAGE_LABELS = {
    OperationKind.DOWNLOAD: "Download",
    OperationKind.TRAINING: "Training",
    OperationKind.PREDICTION: "Predict",
    OperationKind.UPLOAD: "Upload",
}

LEVEL_ICONS = {
    EventLevel.INFO: ("ℹ", "blue"),
    EventLevel.SUCCESS: ("✓", "green"),
    EventLevel.WARNING: ("⚠", "yellow"),
    EventLevel.ERROR: ("✗", "red"),
}

SEVERITY_STYLES = {
    ErrorSeverity.LOW: "yellow",
    ErrorSeverity.MEDIUM: "dark_orange",
    ErrorSeverity.HIGH: "red",
    ErrorSeverity.CRITICAL: "bold white on red",
}

HINT = "q quit · s pipeline · d download · t train · u submit · / command · h help"

MIN_BODY_ROWS = 3


class FrameBuilder:
    """Turns a :class:`DashboardSnapshot` into exactly ``height`` terminal lines."""

    def __init__(self, *, color: bool = True, footer_events: int = 6) -> None:
        self.color = color
        self.footer_events = footer_events

    # --- Frame assembly ----------------------------------------------------

    def build(self, snapshot: DashboardSnapshot, width: int, height: int) -> list[str]:
        header = self.to_lines(self.generate_header(snapshot, width, height), width)
        footer = self.to_lines(self.generate_footer(snapshot, width), width)
        body_rows = max(height - len(header) - len(footer), MIN_BODY_ROWS)
        body = self.to_lines(self.generate_body(snapshot, width, body_rows), width, height=body_rows)
        lines = header + body + footer
        if len(lines) > height:
            # Keep the footer visible on short terminals
            keep = max(height - len(footer), 0)
            lines = (header + body)[:keep] + footer[: height - keep]
        return lines + [""] * (height - len(lines))

    def to_lines(self, renderable: RenderableType, width: int, *, height: int | None = None) -> list[str]:
        console = Console(
            file=io.StringIO(),
            width=max(width, 20),
            height=height or 100,
            force_terminal=self.color,
            color_system="truecolor" if self.color else None,
            legacy_windows=False,
        )
        with console.capture() as capture:
            console.print(renderable)
        lines = capture.get().split("\n")
        if lines and lines[-1] == "":
            lines.pop()
        if height is not None:
            lines = lines[:height] + [""] * max(height - len(lines), 0)
        return lines

    # --- Header ------------------------------------------------------------

    def generate_header(self, snapshot: DashboardSnapshot, width: int, height: int) -> RenderableType:
        parts: list[RenderableType] = []
        if height >= 40 and width >= 60:
            parts.append(Align.center(Text(TITLE, style="bold cyan")))
        parts.append(self.status_line(snapshot))
        if snapshot.progress:
            parts.append(self.progress_grid(snapshot.progress, width))
        return Panel(
            Group(*parts),
            title=Text("Tournament Dashboard", style="bold cyan"),
            subtitle=Text(SUBTITLE, style="dim"),
            border_style="cyan",
            padding=(0, 1),
        )

    def status_line(self, snapshot: DashboardSnapshot) -> Text:
        metrics = snapshot.metrics
        network = snapshot.network
        line = Text()
        line.append("CPU ", style="cyan")
        line.append(f"{metrics.cpu_percent:5.1f}%", style="yellow")
        line.append("  Mem ", style="cyan")
        line.append(f"{metrics.memory_used_gb:.1f}/{metrics.memory_total_gb:.1f} GB", style="yellow")
        line.append("  Up ", style="cyan")
        line.append(format_duration(metrics.uptime_seconds), style="yellow")
        line.append("  Net ", style="cyan")
        if network.is_connected:
            latency = f" {network.latency_ms:.0f} ms" if network.latency_ms is not None else ""
            line.append(f"● online{latency}", style="green")
        elif network.last_check is None:
            line.append("○ checking", style="dim")
        else:
            line.append(f"● offline ({network.consecutive_failures})", style="red")
        if snapshot.paused:
            line.append("  ⏸ PAUSED", style="bold yellow")
        if snapshot.error_total:
            line.append(f"  errors {snapshot.error_total}", style="red")
        return line

    def progress_grid(self, progress: list[ProgressSnapshot], width: int) -> Table:
        bar_width = max(10, min(40, width // 3))
        grid = Table.grid(padding=(0, 1))
        grid.add_column(width=9, no_wrap=True)
        grid.add_column(width=bar_width, no_wrap=True)
        grid.add_column(width=5, justify="right", no_wrap=True)
        grid.add_column(ratio=1, no_wrap=True, overflow="ellipsis")
        for item in progress:
            details = " ".join(
                part
                for part in (
                    item.description,
                    format_count(item.current, item.total, item.unit),
                    f"ETA {format_duration(item.eta_seconds)}" if item.eta_seconds is not None else "",
                )
                if part
            )
            grid.add_row(
                Text(STAGE_LABELS[item.kind], style="cyan"),
                ProgressBar(total=100, completed=item.percent, width=bar_width),
                Text(f"{item.percent:.0f}%", style="yellow"),
                Text(details, style="white"),
            )
        return grid

    # --- Body --------------------------------------------------------------

    def generate_body(self, snapshot: DashboardSnapshot, width: int, rows: int) -> RenderableType:
        inner_rows = max(rows - 2, 1)
        view = snapshot.view
        if snapshot.wizard is not None:
            view = BodyView.WIZARD
        if view is BodyView.TRAINING:
            content, title = self.training_view(snapshot, width, inner_rows), "Training"
        elif view is BodyView.MODEL_DETAILS:
            content, title = self.model_view(snapshot), "Models"
        elif view is BodyView.SYSTEM_INFO:
            content, title = self.system_view(snapshot), "System Info"
        elif view is BodyView.WIZARD and snapshot.wizard is not None:
            content, title = self.wizard_view(snapshot.wizard), "New Model"
        elif view is BodyView.RECOVERY:
            content, title = self.lines_view(snapshot.recovery_lines, inner_rows), "Recovery Report"
        elif view is BodyView.LOGS:
            content, title = self.lines_view(recent_error_lines(snapshot), inner_rows), "Error Log"
        else:
            content, title = self.help_view(), "Help"
        return Panel(content, title=title, border_style="bright_blue", height=rows, padding=(0, 1))

    def help_view(self) -> Table:
        keys = Table(show_header=True, header_style="bold magenta", box=None, padding=(0, 1))
        keys.add_column("Key", style="cyan", no_wrap=True)
        keys.add_column("Action", style="yellow")
        for key, action in KEY_BINDINGS:
            keys.add_row(key, action)
        commands = Table(show_header=True, header_style="bold magenta", box=None, padding=(0, 1))
        commands.add_column("Command", style="cyan", no_wrap=True)
        commands.add_column("Action", style="yellow")
        for command, action in COMMAND_HELP:
            commands.add_row(command, action)
        grid = Table.grid(padding=(0, 4))
        grid.add_column()
        grid.add_column()
        grid.add_row(keys, commands)
        return grid

    def training_view(self, snapshot: DashboardSnapshot, width: int, rows: int) -> RenderableType:
        training = snapshot.training
        grid = Table.grid(padding=(0, 2))
        grid.add_column(width=14)
        grid.add_column(width=20)
        grid.add_column(width=14)
        grid.add_column(width=20)
        grid.add_row(
            Text("Model:", style="cyan"),
            Text(training.current_model or "—", style="yellow"),
            Text("Epoch:", style="cyan"),
            Text(f"{training.epoch}/{training.total_epochs}", style="yellow"),
        )
        grid.add_row(
            Text("Loss:", style="cyan"),
            Text(format_metric(training.loss), style="yellow"),
            Text("Val score:", style="cyan"),
            Text(format_metric(training.val_score), style="yellow"),
        )
        history = training.loss_history
        chart_width = max(10, width - 16)
        spark = sparkline(history, width=chart_width)
        parts: list[RenderableType] = [grid, Text("Loss " + (spark or "waiting for first epoch…"), style="magenta")]
        chart_rows = rows - 4
        if chart_rows >= 3 and len(history) >= 2:
            chart = plot(history[-chart_width:], height=chart_rows - 1)
            parts.append(Text(chart, style="red", no_wrap=True, overflow="crop"))
        return Group(*parts)

    def model_view(self, snapshot: DashboardSnapshot) -> RenderableType:
        table = Table(show_header=True, header_style="bold magenta", box=None, padding=(0, 1))
        table.add_column("", width=1)
        table.add_column("Model", style="cyan", no_wrap=True)
        table.add_column("Status", no_wrap=True)
        for name in ("CORR", "MMC", "FNC", "Sharpe", "Stake"):
            table.add_column(name, justify="right", style="yellow", no_wrap=True)
        for index, model in enumerate(snapshot.models):
            selected = index == snapshot.selected_model
            table.add_row(
                "▶" if selected else "",
                Text(model.name, style="bold" if selected else ""),
                Text("active", style="green") if model.is_active else Text("inactive", style="dim"),
                format_metric(model.corr),
                format_metric(model.mmc),
                format_metric(model.fnc),
                format_metric(model.sharpe, 2),
                format_metric(model.stake, 2),
            )
        parts: list[RenderableType] = [table]
        model = snapshot.selected
        if model is not None:
            detail = Text()
            detail.append("\nSelected: ", style="cyan")
            detail.append(model.name, style="bold yellow")
            if model.model_type:
                detail.append(f"  type {model.model_type}", style="yellow")
            if snapshot.last_submission_id:
                detail.append("  last submission ", style="cyan")
                detail.append(snapshot.last_submission_id, style="yellow")
            parts.append(detail)
        return Group(*parts)

    def system_view(self, snapshot: DashboardSnapshot) -> RenderableType:
        metrics = snapshot.metrics
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("", style="cyan", width=22, no_wrap=True)
        table.add_column("", style="yellow", no_wrap=True)
        table.add_row("CPU", f"{metrics.cpu_percent:.1f}%")
        table.add_row("Memory", f"{metrics.memory_used_gb:.1f} / {metrics.memory_total_gb:.1f} GB")
        table.add_row("Disk free", f"{metrics.disk_free_gb:.1f} / {metrics.disk_total_gb:.1f} GB")
        table.add_row("Threads", str(metrics.threads))
        table.add_row("Uptime", format_duration(metrics.uptime_seconds))
        table.add_row("Datasets ready", ", ".join(snapshot.datasets_completed) or "—")
        table.add_row("Dropped frames", str(snapshot.dropped_frames))
        trend = ", ".join(f"{category.value} {count}" for category, count in snapshot.error_trend.items())
        table.add_row("Errors (last hour)", trend or "none")
        return table

    def wizard_view(self, wizard: WizardState) -> RenderableType:
        lines = Text()
        lines.append(f"Step {wizard.step} of 5\n\n", style="bold magenta")
        if wizard.step == 1:
            lines.append("Model name: ", style="cyan")
            lines.append(wizard.model_name + "█", style="bold yellow")
            lines.append("\n\nType a name and press Enter.", style="dim")
        elif wizard.step == 2:
            lines.append("Model type (press 1-4):\n", style="cyan")
            for index, name in enumerate(MODEL_TYPES, start=1):
                marker = "▶" if name == wizard.model_type else " "
                lines.append(f" {marker} {index}. {name}\n", style="bold yellow" if marker != " " else "")
        elif wizard.step == 3:
            fields = [
                ("Learning rate", f"{wizard.learning_rate:.3f}"),
                ("Max depth", str(wizard.max_depth)),
                ("Feature fraction", f"{wizard.feature_fraction:.2f}"),
                ("Rounds", str(wizard.num_rounds)),
            ]
            lines.append("Parameters (↑/↓ select, ←/→ adjust):\n", style="cyan")
            for index, (label, value) in enumerate(fields):
                selected = index == wizard.selected_field
                marker = "▶" if selected else " "
                lines.append(f" {marker} {label:<18}{value}\n", style="bold yellow" if selected else "")
        elif wizard.step == 4:
            lines.append("Feature neutralization (space toggles, ←/→ adjust):\n", style="cyan")
            lines.append(f"  [{'x' if wizard.neutralize else ' '}] Neutralize features\n", style="yellow")
            lines.append(f"      Proportion {wizard.neutralize_proportion:.2f}\n", style="yellow")
        else:
            lines.append("Confirm new model:\n", style="cyan")
            lines.append(f"  Name: {wizard.model_name}\n  Type: {wizard.model_type}\n", style="yellow")
            lines.append(
                f"  lr={wizard.learning_rate:.3f} depth={wizard.max_depth} "
                f"features={wizard.feature_fraction:.2f} rounds={wizard.num_rounds}\n",
                style="yellow",
            )
            neutral = f"{wizard.neutralize_proportion:.2f}" if wizard.neutralize else "off"
            lines.append(f"  Neutralization: {neutral}\n", style="yellow")
            lines.append("\nPress Enter to create the model.", style="dim")
        lines.append("\nEsc cancels the wizard.", style="dim")
        return lines

    def lines_view(self, lines: list[str], rows: int) -> Text:
        shown = lines[:rows]
        if len(lines) > rows and rows > 0:
            shown = lines[: rows - 1] + [f"… {len(lines) - rows + 1} more lines (see log file)"]
        return Text("\n".join(shown), no_wrap=True, overflow="ellipsis")

    # --- Footer ------------------------------------------------------------

    def generate_footer(self, snapshot: DashboardSnapshot, width: int) -> Panel:
        rows: list[Text] = [self.event_line(e, width - 4) for e in snapshot.events[-self.footer_events :]]
        rows.extend(Text("") for _ in range(self.footer_events - len(rows)))
        rows.append(self.prompt_line(snapshot))
        return Panel(Group(*rows), title="Events", border_style="bright_black", padding=(0, 1))

    def event_line(self, event: EventEntry, width: int) -> Text:
        icon, style = LEVEL_ICONS[event.level]
        line = Text(no_wrap=True, overflow="ellipsis")
        line.append(event.timestamp.astimezone().strftime("%H:%M:%S "), style="dim")
        line.append(f"{icon} ", style=style)
        if event.category is not None and event.severity is not None:
            line.append(f"[{event.category.value}/{event.severity.value}] ", style=SEVERITY_STYLES[event.severity])
        line.append(truncate(event.message, max(width - 12, 10)))
        return line

    def prompt_line(self, snapshot: DashboardSnapshot) -> Text:
        if snapshot.command_buffer is not None:
            return Text.assemble(("/", "bold cyan"), (snapshot.command_buffer, "bold white"), ("█", "cyan"))
        if snapshot.wizard is not None:
            return Text("Wizard: Enter next step · Esc cancel", style="bold magenta")
        return Text(HINT, style="bold white on blue", no_wrap=True, overflow="ellipsis")


def fallback_lines(message: str, width: int, height: int) -> list[str]:
    """Plain frame used when the regular panels cannot be built."""
    lines = [truncate("Dashboard rendering error: " + message, width), truncate(HINT, width)]
    return lines[:height] + [""] * max(height - len(lines), 0)
