"""
Render loop.

Frames are rebuilt from a fresh snapshot whenever the refresh interval
elapses, sooner while a stage is running, and immediately when something
requests a render. The screen is cleared only on the first paint and after a
resize; every other frame rewrites rows in place. Terminal writes happen on
the loop's own writer thread, so stage workers filling the default executor
cannot hold frames back. A frame that arrives while the previous write is
still in flight is dropped and counted, and no frame is accepted once the
dashboard stops.
"""

from __future__ import annotations

import asyncio
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Callable

from loguru import logger

from .models import BodyView
from .panels import FrameBuilder, fallback_lines
from .recovery import RecoveryReporter
from .state import DashboardState
from .terminal import Terminal, restore_terminal

TICK = 0.05
RELEASE_TIMEOUT = 2.0


def compose_frame(terminal: Terminal, lines: list[str], *, full_clear: bool) -> str:
    """Wrap ``lines`` in the control sequences for an in-place repaint.

    When the terminal cannot address rows the frame degrades to plain lines.
    """
    if not terminal.move_sequence(0):
        return "\n".join(lines) + "\n"
    parts: list[str] = []
    if full_clear:
        parts.append(terminal.clear_sequence())
    parts.append(terminal.save_cursor_sequence())
    clear_eol = terminal.clear_eol_sequence()
    for row, line in enumerate(lines):
        parts.append(terminal.move_sequence(row))
        parts.append(line)
        parts.append(clear_eol)
    parts.append(terminal.restore_cursor_sequence())
    return "".join(parts)


class RenderLoop:
    """Paints the dashboard until the state stops running."""

    def __init__(
        self,
        state: DashboardState,
        terminal: Terminal,
        *,
        reporter: RecoveryReporter | None = None,
        builder: FrameBuilder | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = state
        self.terminal = terminal
        self.reporter = reporter or RecoveryReporter(state)
        self.builder = builder or FrameBuilder(footer_events=state.config.footer_events)
        self._clock = clock
        self._config = state.config
        self._last_size: tuple[int, int] | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dashboard-render")
        self._write: Future[None] | None = None
        self._pending: asyncio.Future[None] | None = None
        self._consecutive_faults = 0
        self.frames = 0

    def interval(self) -> float:
        if self.state.any_active():
            return self._config.fast_refresh_interval
        return self._config.refresh_interval

    async def run(self) -> None:
        logger.info("Render loop started")
        last_paint = float("-inf")
        while self.state.is_running:
            forced = self.state.consume_render_request()
            paused = self.state.mutate(lambda s: s.paused)
            due = self._clock() - last_paint >= self.interval()
            if forced or (due and not paused):
                await self.paint_once()
                last_paint = self._clock()
            await asyncio.sleep(min(TICK, self.interval()))
        await self.drain()
        logger.info(f"Render loop stopped after {self.frames} frames")

    async def paint_once(self) -> bool:
        """Build and submit one frame. Returns False when the frame was dropped or failed."""
        try:
            frame = self.compose()
        except Exception as e:
            self._handle_fault(e)
            return False
        self._consecutive_faults = 0
        return self.submit(frame)

    def compose(self) -> str:
        snapshot = self.state.snapshot()
        width, height = self.terminal.size()
        lines = self.builder.build(snapshot, width, height)
        full_clear = self._last_size != (width, height)
        self._last_size = (width, height)
        return compose_frame(self.terminal, lines, full_clear=full_clear)

    def submit(self, frame: str) -> bool:
        if self._pending is not None and not self._pending.done():
            self.state.record_dropped_frame()
            logger.debug("Previous frame still writing, dropping frame")
            return False
        # Checked under the state lock so shutdown sees every accepted write
        write = self.state.mutate(lambda s: self._executor.submit(self.terminal.write, frame) if s.running else None)
        if write is None:
            logger.debug("Dashboard stopped, frame discarded")
            return False
        self._write = write
        self._pending = asyncio.wrap_future(write)
        self._pending.add_done_callback(self._write_done)
        self.frames += 1
        return True

    def _write_done(self, future: asyncio.Future[None]) -> None:
        if future.cancelled():
            return
        fault = future.exception()
        if fault is not None:
            logger.opt(exception=fault).error(f"Terminal write failed: {fault}")

    def _handle_fault(self, fault: Exception) -> None:
        self._consecutive_faults += 1
        logger.exception(f"Error rendering dashboard (#{self._consecutive_faults}): {fault}")
        if self._consecutive_faults == 1:
            self.state.record_error(fault, context="Render failed")
            in_recovery = self.state.mutate(lambda s: s.view is BodyView.RECOVERY)
            if not in_recovery:
                try:
                    self.reporter.report(fault)
                except Exception as e:
                    logger.exception(f"Recovery report failed: {e}")
        # Force a full repaint once rendering works again
        self._last_size = None
        try:
            width, height = self.terminal.size()
            self.submit(compose_frame(self.terminal, fallback_lines(str(fault), width, height), full_clear=True))
        except Exception as e:
            logger.error(f"Fallback frame failed: {e}")

    async def drain(self) -> None:
        """Wait for the frame currently being written, if any."""
        if self._pending is not None and not self._pending.done():
            try:
                await self._pending
            except Exception as e:
                logger.debug(f"Last frame write failed during shutdown: {e}")

    def release(self, timeout: float = RELEASE_TIMEOUT) -> None:
        """Hand the terminal back once the last accepted frame has landed.

        Registered as a shutdown hook; callers have already cleared the
        running flag, so no further frame can start.
        """
        if self._write is not None:
            _, not_done = wait_futures([self._write], timeout=timeout)
            if not_done:
                logger.warning(f"Frame write still running after {timeout:g}s, restoring the terminal anyway")
        restore_terminal(self.terminal)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
