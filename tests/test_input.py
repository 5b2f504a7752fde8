import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from tournament_dashboard.input import InputDispatcher
from tournament_dashboard.keys import Key, KeyKind
from tournament_dashboard.models import BodyView, EventLevel
from tournament_dashboard.terminal import FakeTerminal

from conftest import keys, messages

ENTER = "\r"
ESCAPE = "\x1b"
BACKSPACE = "\x7f"
UP = "\x1b[A"
DOWN = "\x1b[B"


@pytest.fixture
def terminal():
    return FakeTerminal()


@pytest.fixture
def dispatcher(state, terminal, orchestrator):
    return InputDispatcher(state, terminal, orchestrator)


def press(dispatcher, *sequences):
    for key in keys(*sequences):
        dispatcher.handle_key(key)


def test_q_stops_the_dashboard(state, dispatcher):
    press(dispatcher, "q")
    assert not state.is_running
    assert messages(state)[-1] == "Shutting down"


def test_instant_keys_change_the_view(state, dispatcher):
    press(dispatcher, "i")
    assert state.view is BodyView.SYSTEM_INFO
    press(dispatcher, "m")
    assert state.view is BodyView.MODEL_DETAILS
    press(dispatcher, "l")
    assert state.view is BodyView.LOGS
    press(dispatcher, "h")
    assert state.view is BodyView.HELP
    press(dispatcher, "P")
    assert state.paused


def test_arrows_move_the_model_selection(state, dispatcher):
    press(dispatcher, DOWN)
    assert state.selected_model == 1
    press(dispatcher, UP, UP)
    assert state.selected_model == 0
    press(dispatcher, ENTER)
    assert state.view is BodyView.MODEL_DETAILS


def test_clear_events(state, dispatcher):
    state.add_event(EventLevel.INFO, "noise")
    press(dispatcher, "c")
    assert len(state.events) == 0


def test_e_shows_recovery_report(state, dispatcher):
    press(dispatcher, "e")
    assert state.view is BodyView.RECOVERY
    assert state.recovery_lines[0] == "ERROR DETAILS"


def test_command_mode_edits_and_cancels(state, dispatcher):
    press(dispatcher, "/", "pausx", BACKSPACE)
    assert state.command_buffer == "paus"
    press(dispatcher, ESCAPE)
    assert state.command_buffer is None
    assert not state.paused


def test_command_keys_do_not_trigger_instant_actions(state, dispatcher):
    press(dispatcher, "/", "q")
    assert state.is_running
    assert state.command_buffer == "q"


def test_pause_and_resume_commands(state, dispatcher):
    press(dispatcher, "/", "pause", ENTER)
    assert state.paused
    assert state.command_buffer is None
    press(dispatcher, "/", "pause", ENTER)
    assert state.paused
    press(dispatcher, "/", "resume", ENTER)
    assert not state.paused


def test_unknown_command_lists_available_commands(state, dispatcher):
    press(dispatcher, "/", "frobnicate", ENTER)
    last = state.events.recent(1)[0]
    assert last.level is EventLevel.WARNING
    assert last.message.startswith("Unknown command /frobnicate. Available: /download, /train")
    assert state.is_running


def test_quit_command(state, dispatcher):
    assert dispatcher.execute_command("/quit")
    assert not state.is_running


@pytest.mark.asyncio
async def test_download_command_passes_datasets(state, dispatcher, orchestrator, backend):
    press(dispatcher, "/", "download live", ENTER)
    await orchestrator.wait_idle()
    assert backend.downloads == ["live"]
    assert backend.count("train") == 0


@pytest.mark.asyncio
async def test_train_key_dispatches_without_waiting(state, dispatcher, orchestrator, backend):
    press(dispatcher, "t")
    assert backend.calls == []
    assert orchestrator.pending == 1
    await orchestrator.wait_idle()
    assert backend.calls == ["train", "predict"]


def test_wizard_creates_a_model(state, dispatcher):
    press(dispatcher, "n")
    assert state.view is BodyView.WIZARD
    press(dispatcher, "gamma", ENTER)
    assert state.wizard.step == 2
    press(dispatcher, "2", ENTER)
    assert state.wizard.model_type == "LightGBM"
    # parameters: raise the learning rate, then move to max depth and lower it
    press(dispatcher, Key(KeyKind.RIGHT), DOWN, Key(KeyKind.LEFT), ENTER)
    assert state.wizard.learning_rate == pytest.approx(0.011)
    assert state.wizard.max_depth == 4
    press(dispatcher, " ", ENTER)
    assert not state.wizard.neutralize
    assert state.wizard.step == 5
    press(dispatcher, ENTER)

    assert state.wizard is None
    assert [m.name for m in state.models] == ["alpha", "beta", "gamma"]
    assert state.models[-1].model_type == "LightGBM"
    assert state.selected_model == 2
    assert state.view is BodyView.MODEL_DETAILS
    assert messages(state)[-1] == "Created model gamma (LightGBM)"


def test_wizard_takes_every_key(state, dispatcher):
    press(dispatcher, "n", "q")
    assert state.is_running
    assert state.wizard.model_name == "q"


def test_wizard_rejects_empty_name(state, dispatcher):
    press(dispatcher, "n", ENTER)
    assert state.wizard.step == 1
    assert messages(state)[-1] == "Model name cannot be empty"


def test_wizard_rejects_duplicate_name(state, dispatcher):
    press(dispatcher, "n", "alpha", ENTER, ENTER, ENTER, ENTER, ENTER)
    assert state.wizard is not None
    assert state.wizard.step == 1
    assert len(state.models) == 2
    assert messages(state)[-1] == "A model named alpha already exists"


def test_escape_cancels_the_wizard(state, dispatcher):
    press(dispatcher, "n", "delta", ESCAPE)
    assert state.wizard is None
    assert state.view is BodyView.HELP
    assert len(state.models) == 2
    assert messages(state)[-1] == "Model wizard cancelled"


@pytest.mark.asyncio
async def test_input_loop_reads_keys_from_the_terminal(state, orchestrator):
    terminal = FakeTerminal(["i", "q"])
    dispatcher = InputDispatcher(state, terminal, orchestrator)
    await dispatcher.run()
    assert state.view is BodyView.SYSTEM_INFO
    assert not state.is_running
    assert terminal.pending_keys == 0


@pytest.mark.asyncio
async def test_keys_are_read_while_the_default_executor_is_busy(state, orchestrator):
    loop = asyncio.get_running_loop()
    loop.set_default_executor(ThreadPoolExecutor(max_workers=2))
    release = threading.Event()
    stalled = [loop.run_in_executor(None, release.wait) for _ in range(4)]
    dispatcher = InputDispatcher(state, FakeTerminal(["q"]), orchestrator)
    try:
        await asyncio.wait_for(dispatcher.run(), timeout=2.0)
        assert not state.is_running
    finally:
        release.set()
        await asyncio.gather(*stalled)
        dispatcher.close()


@pytest.mark.asyncio
async def test_stake_command(state, dispatcher, orchestrator, backend):
    press(dispatcher, "/", "stake 7.5", ENTER)
    await orchestrator.wait_idle()
    assert backend.stakes == {"alpha": 7.5}


@pytest.mark.parametrize(
    "command, message",
    [("stake", "Usage: /stake <amount>"), ("stake lots", "Invalid stake amount: lots")],
)
def test_stake_command_needs_a_number(state, dispatcher, orchestrator, command, message):
    press(dispatcher, "/", command, ENTER)
    assert messages(state)[-1] == message
    assert orchestrator.pending == 0
