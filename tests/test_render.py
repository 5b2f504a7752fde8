import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from tournament_dashboard.chart import plot, sparkline
from tournament_dashboard.models import BodyView, EventLevel, OperationKind, WizardState
from tournament_dashboard.panels import FrameBuilder, fallback_lines
from tournament_dashboard.render import RenderLoop, compose_frame
from tournament_dashboard.terminal import FakeTerminal
from tournament_dashboard.utils import format_bytes, format_count, format_duration, mask_secret, truncate


class AddressableTerminal(FakeTerminal):
    def clear_sequence(self):
        return "<clear>"

    def move_sequence(self, row):
        return f"<{row}>"

    def clear_eol_sequence(self):
        return "<eol>"

    def save_cursor_sequence(self):
        return "<save>"

    def restore_cursor_sequence(self):
        return "<restore>"


class FailingBuilder:
    def build(self, snapshot, width, height):
        raise RuntimeError("layout exploded")


# --- Frame composition -------------------------------------------------------


def test_compose_frame_falls_back_to_plain_lines():
    assert compose_frame(FakeTerminal(), ["a", "b"], full_clear=True) == "a\nb\n"


def test_compose_frame_addresses_rows():
    terminal = AddressableTerminal()
    assert compose_frame(terminal, ["a", "b"], full_clear=True) == "<clear><save><0>a<eol><1>b<eol><restore>"
    assert compose_frame(terminal, ["a"], full_clear=False) == "<save><0>a<eol><restore>"


def test_screen_is_cleared_only_on_first_paint_and_resize(state):
    terminal = AddressableTerminal(columns=80, rows=24)
    loop = RenderLoop(state, terminal, builder=FrameBuilder(color=False))
    assert loop.compose().startswith("<clear>")
    assert not loop.compose().startswith("<clear>")
    terminal.resize(100, 30)
    assert loop.compose().startswith("<clear>")


@pytest.mark.parametrize("view", list(BodyView))
def test_frame_has_exactly_terminal_height_lines(state, view):
    state.set_view(view)
    if view is BodyView.WIZARD:
        state.wizard = WizardState(model_name="gamma")
    state.start_operation(OperationKind.DOWNLOAD, description="Downloading train", unit="bytes")
    state.update_progress(OperationKind.DOWNLOAD, 40, current=40 * 1024, total=100 * 1024)
    for epoch in range(1, 6):
        state.record_epoch(epoch, 10, 1.0 / epoch, 0.02)
    for height, width in ((40, 100), (24, 80), (10, 40)):
        lines = FrameBuilder(color=False).build(state.snapshot(), width, height)
        assert len(lines) == height


def test_frame_shows_progress_and_footer_events(state):
    state.start_operation(OperationKind.TRAINING, description="Training alpha", current=2, total=10, unit="epochs")
    state.update_progress(OperationKind.TRAINING, 20)
    state.add_event(EventLevel.WARNING, "disk almost full")
    text = "\n".join(FrameBuilder(color=False).build(state.snapshot(), 100, 40))
    assert "Training" in text
    assert "20%" in text
    assert "disk almost full" in text
    assert "q quit" in text


def test_command_buffer_replaces_the_hint(state):
    state.command_buffer = "down"
    text = "\n".join(FrameBuilder(color=False).build(state.snapshot(), 100, 30))
    assert "/down" in text
    assert "q quit" not in text


def test_fallback_lines_fit_the_screen():
    lines = fallback_lines("boom", 30, 5)
    assert len(lines) == 5
    assert all(len(line) <= 30 for line in lines)
    assert lines[0].startswith("Dashboard rendering error")


# --- Render loop -------------------------------------------------------------


@pytest.mark.asyncio
async def test_paint_writes_one_frame(state):
    terminal = FakeTerminal(columns=80, rows=24)
    loop = RenderLoop(state, terminal, builder=FrameBuilder(color=False))
    assert await loop.paint_once()
    await loop.drain()
    assert len(terminal.writes) == 1
    assert terminal.writes[0].count("\n") == 24


@pytest.mark.asyncio
async def test_frame_is_dropped_while_previous_write_is_pending(state):
    terminal = FakeTerminal(columns=80, rows=24, write_delay=0.2)
    loop = RenderLoop(state, terminal, builder=FrameBuilder(color=False))
    assert await loop.paint_once()
    assert not await loop.paint_once()
    await loop.drain()
    assert state.dropped_frames == 1
    assert loop.frames == 1
    assert len(terminal.writes) == 1


@pytest.mark.asyncio
async def test_render_fault_reports_once_and_paints_fallback(state):
    terminal = FakeTerminal(columns=80, rows=24)
    loop = RenderLoop(state, terminal, builder=FailingBuilder())

    assert not await loop.paint_once()
    await loop.drain()
    assert "Dashboard rendering error: layout exploded" in terminal.writes[-1]
    assert state.view is BodyView.RECOVERY
    assert state.errors.total == 1

    assert not await loop.paint_once()
    await loop.drain()
    assert state.errors.total == 1
    assert len(terminal.writes) == 2
    assert state.is_running


@pytest.mark.asyncio
async def test_render_loop_stops_with_the_state(state):
    terminal = FakeTerminal(columns=80, rows=24)
    loop = RenderLoop(state, terminal, builder=FrameBuilder(color=False))
    task = asyncio.create_task(loop.run())
    await asyncio.sleep(0.15)
    state.shutdown()
    await asyncio.wait_for(task, timeout=2.0)
    assert loop.frames >= 1
    assert terminal.writes


@pytest.mark.asyncio
async def test_paused_loop_paints_only_on_request(state):
    terminal = FakeTerminal(columns=80, rows=24)
    loop = RenderLoop(state, terminal, builder=FrameBuilder(color=False))
    state.toggle_pause()
    task = asyncio.create_task(loop.run())
    await asyncio.sleep(0.2)
    painted = loop.frames
    await asyncio.sleep(0.2)
    assert loop.frames == painted
    state.request_render()
    await asyncio.sleep(0.3)
    assert loop.frames == painted + 1
    state.shutdown()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_frames_are_written_while_the_default_executor_is_busy(state):
    running_loop = asyncio.get_running_loop()
    running_loop.set_default_executor(ThreadPoolExecutor(max_workers=2))
    release = threading.Event()
    stalled = [running_loop.run_in_executor(None, release.wait) for _ in range(4)]
    terminal = FakeTerminal(columns=80, rows=24)
    loop = RenderLoop(state, terminal, builder=FrameBuilder(color=False))
    try:
        assert await loop.paint_once()
        await asyncio.wait_for(loop.drain(), timeout=2.0)
        assert len(terminal.writes) == 1
    finally:
        release.set()
        await asyncio.gather(*stalled)
        loop.close()


@pytest.mark.asyncio
async def test_release_waits_for_the_frame_in_flight(state):
    terminal = FakeTerminal(columns=80, rows=24, write_delay=0.2)
    terminal.enter_raw_mode()
    loop = RenderLoop(state, terminal, builder=FrameBuilder(color=False))
    state.add_release_hook(loop.release)

    assert await loop.paint_once()
    state.shutdown()

    assert terminal.timeline == ["raw", "write", "normal"]
    assert terminal.cursor_visible
    # no frame is accepted once the dashboard has stopped
    assert not await loop.paint_once()
    assert len(terminal.writes) == 1
    loop.close()


# --- Formatting helpers -------------------------------------------------------


def test_sparkline():
    assert sparkline([]) == ""
    assert sparkline([1, 1, 1]) == "▁▁▁"
    assert sparkline([0, 1]) == "▁█"
    assert len(sparkline(range(100), width=10)) == 10


def test_plot_has_requested_height():
    chart = plot([3.0, 2.0, 1.0, 0.0], height=4)
    assert len(chart.splitlines()) == 5


def test_format_helpers():
    assert format_duration(None) == "—"
    assert format_duration(65) == "01:05"
    assert format_duration(3725) == "01:02:05"
    assert format_bytes(512) == "512 B"
    assert format_bytes(2048) == "2.00 KiB"
    assert format_count(3, 10, "epochs") == "3 / 10 epochs"
    assert format_count(None, 10, "rows") == ""
    assert mask_secret("") == "not set"
    assert mask_secret("abcdef123") == "set (****23)"
    assert truncate("abcdef", 4) == "abc…"
    assert truncate("abc", 4) == "abc"
