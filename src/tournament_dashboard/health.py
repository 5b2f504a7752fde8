"""
Host and network health for the dashboard header and recovery report.

``HealthMonitor`` runs as one task beside the render and input loops. It
samples CPU/memory/disk through psutil, pings the tournament endpoint with
httpx, refreshes model performance on its own cadence and writes a
last-known-good snapshot after each successful refresh.
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import httpx
import psutil
from loguru import logger

from .models import EventLevel, LastKnownGood, SystemMetrics, utcnow
from .state import DashboardState

if TYPE_CHECKING:  # pragma: no cover - type checking helper
    from .orchestrator import PipelineOrchestrator

GB = 1024**3


def sample_metrics(uptime_seconds: float = 0.0, *, disk_path: Path | str = ".") -> SystemMetrics:
    """Take one psutil sample. The first CPU reading after startup may be 0."""
    memory = psutil.virtual_memory()
    path = Path(disk_path)
    while not path.exists() and path != path.parent:
        path = path.parent
    disk = psutil.disk_usage(str(path))
    process = psutil.Process()
    return SystemMetrics(
        cpu_percent=psutil.cpu_percent(interval=None),
        memory_used_gb=(memory.total - memory.available) / GB,
        memory_total_gb=memory.total / GB,
        disk_free_gb=disk.free / GB,
        disk_total_gb=disk.total / GB,
        threads=process.num_threads(),
        uptime_seconds=uptime_seconds,
    )


async def ping_endpoint(
    url: str, *, timeout: float = 5.0, client: httpx.AsyncClient | None = None
) -> tuple[bool, float | None]:
    """Return ``(connected, latency_ms)``. Any HTTP answer below 500 counts as connected."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout)
    started = time.perf_counter()
    try:
        response = await client.head(url, timeout=timeout)
    except httpx.HTTPError as e:
        logger.debug(f"Network ping to {url} failed: {e}")
        return False, None
    finally:
        if owns_client:
            await client.aclose()
    latency_ms = (time.perf_counter() - started) * 1000
    return response.status_code < 500, latency_ms


# --- Last-known-good snapshot ----------------------------------------------


def save_last_known_good(path: Path, record: LastKnownGood) -> bool:
    """Write ``record`` as JSON. Failures are logged and reported as False."""
    payload = {
        "timestamp": record.timestamp.isoformat(),
        "model_name": record.model_name,
        "model_metrics": record.model_metrics,
        "network_connected": record.network_connected,
        "api_latency": record.api_latency,
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2))
        tmp.replace(path)
    except OSError as e:
        logger.warning(f"Could not write last-known-good snapshot to {path}: {e}")
        return False
    return True


def load_last_known_good(path: Path) -> LastKnownGood | None:
    """Read the snapshot back. Missing or corrupt files mean there is no prior state."""
    try:
        payload = json.loads(path.read_text())
        return LastKnownGood(
            timestamp=datetime.fromisoformat(payload["timestamp"]),
            model_name=payload.get("model_name"),
            model_metrics=dict(payload.get("model_metrics") or {}),
            network_connected=bool(payload.get("network_connected", False)),
            api_latency=payload.get("api_latency"),
        )
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"Ignoring unreadable last-known-good snapshot {path}: {e}")
        return None


def build_last_known_good(state: DashboardState) -> LastKnownGood:
    snapshot = state.snapshot()
    model = snapshot.selected
    metrics: dict[str, float | None] = {}
    if model is not None:
        metrics = {"corr": model.corr, "mmc": model.mmc, "fnc": model.fnc, "sharpe": model.sharpe, "stake": model.stake}
    return LastKnownGood(
        timestamp=utcnow(),
        model_name=model.name if model is not None else None,
        model_metrics=metrics,
        network_connected=snapshot.network.is_connected,
        api_latency=snapshot.network.latency_ms,
    )


class HealthMonitor:
    """Periodic metrics, network and model refresh loop."""

    def __init__(
        self,
        state: DashboardState,
        *,
        orchestrator: "PipelineOrchestrator | None" = None,
        clock: Callable[[], float] = time.monotonic,
        sampler: Callable[..., SystemMetrics] = sample_metrics,
        pinger: Callable[..., Any] = ping_endpoint,
    ) -> None:
        self.state = state
        self.orchestrator = orchestrator
        self._config = state.config
        self._clock = clock
        self._sampler = sampler
        self._pinger = pinger
        self._last_metrics = float("-inf")
        self._last_network = float("-inf")
        self._last_models = float("-inf")

    async def sample_once(self) -> SystemMetrics:
        metrics = await asyncio.to_thread(self._sampler, self.state.uptime(), disk_path=self._config.data_dir)
        self.state.update_metrics(metrics)
        return metrics

    async def check_network(self) -> bool:
        was_connected = self.state.mutate(lambda s: s.network.is_connected)
        connected, latency_ms = await self._pinger(self._config.network_check_url, timeout=self._config.network_timeout)
        status = self.state.update_network(connected, latency_ms)
        if connected and not was_connected:
            self.state.add_event(EventLevel.SUCCESS, f"Connected to tournament API ({latency_ms:.0f} ms)")
        elif not connected and status.consecutive_failures in (1, 5):
            self.state.add_event(
                EventLevel.WARNING, f"Tournament API unreachable ({status.consecutive_failures} failed checks)"
            )
        return connected

    async def refresh_models(self) -> bool:
        if self.orchestrator is None:
            return False
        refreshed = await self.orchestrator.refresh_models()
        if not refreshed:
            return False
        record = build_last_known_good(self.state)
        await asyncio.to_thread(save_last_known_good, self._config.last_known_good_path, record)
        return True

    async def tick(self) -> None:
        """Run whichever checks are due."""
        now = self._clock()
        if now - self._last_metrics >= self._config.metrics_interval:
            self._last_metrics = now
            await self.sample_once()
        if now - self._last_network >= self._config.network_check_interval:
            self._last_network = now
            await self.check_network()
        if now - self._last_models >= self._config.model_update_interval:
            self._last_models = now
            await self.refresh_models()

    async def run(self, poll: float = 0.5) -> None:
        logger.info("Health monitor started")
        while self.state.is_running:
            if not self.state.mutate(lambda s: s.paused):
                try:
                    await self.tick()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(f"Health check failed: {e}")
                    self.state.record_error(e, context="Health check")
            await asyncio.sleep(poll)
        logger.info("Health monitor stopped")
