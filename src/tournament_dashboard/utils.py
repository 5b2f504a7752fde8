"""Utility functions for the dashboard."""

from __future__ import annotations

TITLE = """╔╦╗╔═╗╦ ╦╦═╗╔╗╔╔═╗╔╦╗╔═╗╔╗╔╔╦╗
 ║ ║ ║║ ║╠╦╝║║║╠═╣║║║║╣ ║║║ ║
 ╩ ╚═╝╚═╝╩╚═╝╚╝╩ ╩╩ ╩╚═╝╝╚╝ ╩ """

SUBTITLE = "Numerai tournament pipeline dashboard"


def format_bytes(value: float) -> str:
    """Convert bytes into a compact human readable string."""

    units = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    size = float(value)
    for unit in units:
        if abs(size) < 1024 or unit == units[-1]:
            return f"{size:.2f} {unit}" if unit != "B" else f"{int(size)} {unit}"
        size /= 1024
    return f"{size:.2f} {units[-1]}"


def format_duration(seconds: float | None) -> str:
    """``HH:MM:SS`` (or ``MM:SS`` below an hour); ``—`` when unknown."""
    if seconds is None or seconds < 0:
        return "—"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_count(current: float | None, total: float | None, unit: str) -> str:
    """Render a progress counter such as ``12.00 MiB / 40.00 MiB`` or ``3 / 10 epochs``."""
    if current is None:
        return ""
    if unit == "bytes":
        done = format_bytes(current)
        return f"{done} / {format_bytes(total)}" if total is not None else done
    suffix = f" {unit}" if unit else ""
    if total is not None:
        return f"{int(current):,} / {int(total):,}{suffix}"
    return f"{int(current):,}{suffix}"


def format_metric(value: float | None, precision: int = 4) -> str:
    return f"{value:.{precision}f}" if value is not None else "—"


def mask_secret(value: str) -> str:
    """Show only whether a credential is set, plus its last two characters."""
    if not value:
        return "not set"
    if len(value) <= 4:
        return "set (****)"
    return f"set (****{value[-2:]})"


def truncate(text: str, width: int) -> str:
    if width <= 0:
        return ""
    if len(text) <= width:
        return text
    if width == 1:
        return text[:1]
    return text[: width - 1] + "…"
