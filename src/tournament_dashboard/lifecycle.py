"""Lifecycle management for the dashboard."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable

from loguru import logger
from rich.console import Console

from .backend import PipelineBackend
from .health import HealthMonitor
from .input import InputDispatcher
from .log_setup import attach_event_sink
from .models import EventLevel, SystemMetrics
from .orchestrator import PipelineOrchestrator
from .recovery import RecoveryReporter, ReportSection, print_report
from .render import RenderLoop
from .settings import DashboardConfig
from .state import DashboardState
from .terminal import BlessedTerminal, Terminal, raw_mode


class DashboardApp:
    """Builds the dashboard state once and runs the render, input and health tasks."""

    def __init__(
        self,
        *,
        config: DashboardConfig,
        backend: PipelineBackend,
        terminal: Terminal | None = None,
        console: Console | None = None,
        pinger: Callable[..., Awaitable[tuple[bool, float | None]]] | None = None,
        sampler: Callable[..., SystemMetrics] | None = None,
        mirror_logs: bool = True,
        auto_start: bool = False,
    ) -> None:
        self.config = config
        self.state = DashboardState(config)
        self.terminal = terminal or BlessedTerminal()
        self._console = console
        self.reporter = RecoveryReporter(self.state)
        self.orchestrator = PipelineOrchestrator(self.state, backend)
        health_kwargs: dict[str, Any] = {}
        if pinger is not None:
            health_kwargs["pinger"] = pinger
        if sampler is not None:
            health_kwargs["sampler"] = sampler
        self.health = HealthMonitor(self.state, orchestrator=self.orchestrator, **health_kwargs)
        self.render_loop = RenderLoop(self.state, self.terminal, reporter=self.reporter)
        self.input = InputDispatcher(
            self.state, self.terminal, self.orchestrator, reporter=self.reporter, health=self.health
        )
        self._mirror_logs = mirror_logs
        self._auto_start = auto_start
        self._event_sink: int | None = None
        self._tasks: list[asyncio.Task[Any]] = []
        self._started = False
        self.fatal_report: list[ReportSection] | None = None

    async def start(self) -> None:
        """Start the dashboard."""
        if self._started:
            return

        # The render loop restores the terminal after its last frame has landed
        self.state.add_release_hook(self.render_loop.release)
        if self._mirror_logs:
            self._event_sink = attach_event_sink(self.state)

        self.state.add_event(EventLevel.INFO, "Dashboard started")
        if not self.config.has_credentials:
            self.state.add_event(EventLevel.WARNING, "No API credentials configured, submissions will fail")

        self._tasks = [
            asyncio.create_task(self.render_loop.run(), name="dashboard-render"),
            asyncio.create_task(self.input.run(), name="dashboard-input"),
            asyncio.create_task(self.health.run(), name="dashboard-health"),
        ]
        self._started = True
        logger.info("Dashboard started - render, input and health tasks created")

        if self._auto_start:
            self.state.add_event(EventLevel.INFO, "Auto-start enabled, running the full pipeline")
            self.orchestrator.dispatch(self.orchestrator.run_pipeline(), name="pipeline")

    async def stop(self) -> None:
        """Stop the dashboard."""
        if not self._started:
            return

        self.state.shutdown()
        await self.orchestrator.shutdown()
        # Loops exit on their own within one poll interval
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=max(self.config.input_poll_interval * 5, 1.0))
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self.render_loop.close()
        self.input.close()
        if self._event_sink is not None:
            with contextlib.suppress(ValueError):
                logger.remove(self._event_sink)
            self._event_sink = None
        self._tasks = []
        self._started = False
        logger.info("Dashboard stopped")

    async def run(self) -> int:
        """Run until quit. Returns the process exit code.

        Any exception escaping the loops produces one recovery report, the
        terminal is restored, and the report is printed to the console.
        """
        exit_code = 0
        with raw_mode(self.terminal):
            try:
                await self.start()
                await self._wait()
            except asyncio.CancelledError:
                logger.info("Dashboard cancelled")
                raise
            except Exception as e:
                logger.exception(f"Dashboard stopped unexpectedly: {type(e).__name__}: {e}")
                exit_code = 1
                try:
                    self.fatal_report = self.reporter.report(e)
                except Exception as report_error:
                    logger.exception(f"Recovery report failed: {report_error}")
            finally:
                await self.stop()

        if self.fatal_report is not None:
            console = self._console or Console(stderr=True)
            console.print("[red]Dashboard encountered an error and was closed.[/]")
            print_report(self.fatal_report, console)
        return exit_code

    async def _wait(self) -> None:
        """Block until the loops finish; re-raise the first loop failure."""
        done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            fault = task.exception()
            if fault is not None:
                raise fault
        self.state.shutdown()

    async def run_headless(self) -> int:
        """Run the full pipeline once without the terminal UI."""
        logger.info("Running pipeline without the dashboard")
        try:
            ok = await self.orchestrator.run_pipeline()
        finally:
            self.state.shutdown()
        return 0 if ok else 1

    def diagnose(self) -> list[ReportSection]:
        """Build the recovery report without starting anything."""
        sections = self.reporter.build()
        print_report(sections, self._console or Console())
        return sections
