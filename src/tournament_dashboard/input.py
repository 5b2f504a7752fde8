"""
Keyboard input.

Keys are read on the dispatcher's own thread, apart from the default executor
that stage workers use, and routed by mode: the wizard form takes
every key while it is open, ``/`` opens a command line, and otherwise single
keys act immediately. Pipeline stages are handed to the orchestrator as tasks
so a keypress never waits for a stage to finish.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable

from loguru import logger

from .keys import Key, KeyKind
from .models import MODEL_TYPES, WIZARD_STEPS, BodyView, EventLevel, ModelInfo, WizardState
from .orchestrator import PipelineOrchestrator
from .recovery import RecoveryReporter
from .state import DashboardState
from .terminal import Terminal

if TYPE_CHECKING:  # pragma: no cover - type checking helper
    from .health import HealthMonitor

MAX_NAME_LENGTH = 40

# (attribute, step, minimum, maximum)
WIZARD_PARAMETERS = [
    ("learning_rate", 0.001, 0.001, 1.0),
    ("max_depth", 1, 1, 20),
    ("feature_fraction", 0.05, 0.05, 1.0),
    ("num_rounds", 100, 100, 10_000),
]


class InputDispatcher:
    """Routes keystrokes to state changes and pipeline commands."""

    def __init__(
        self,
        state: DashboardState,
        terminal: Terminal,
        orchestrator: PipelineOrchestrator,
        *,
        reporter: RecoveryReporter | None = None,
        health: "HealthMonitor | None" = None,
    ) -> None:
        self.state = state
        self.terminal = terminal
        self.orchestrator = orchestrator
        self.reporter = reporter or RecoveryReporter(state)
        self.health = health
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dashboard-input")
        self._instant: dict[str, Callable[[], None]] = {
            "q": self.quit,
            "p": self.state.toggle_pause,
            "s": lambda: self._dispatch("pipeline"),
            "d": lambda: self._dispatch("download"),
            "t": lambda: self._dispatch("train"),
            "u": lambda: self._dispatch("submit"),
            "r": lambda: self._dispatch("refresh"),
            "h": self.state.toggle_help,
            "n": self.open_wizard,
            "i": lambda: self.state.set_view(BodyView.SYSTEM_INFO),
            "m": lambda: self.state.set_view(BodyView.MODEL_DETAILS),
            "c": self.state.clear_events,
            "e": self.show_report,
            "l": lambda: self.state.set_view(BodyView.LOGS),
            "/": self.begin_command,
        }
        self._commands: dict[str, Callable[[list[str]], None]] = {
            "download": lambda args: self._dispatch("download", args),
            "train": lambda args: self._dispatch("train"),
            "predict": lambda args: self._dispatch("predict"),
            "submit": lambda args: self._dispatch("submit"),
            "stake": self._stake,
            "pipeline": lambda args: self._dispatch("pipeline"),
            "refresh": lambda args: self._dispatch("refresh"),
            "pause": lambda args: self._set_paused(True),
            "resume": lambda args: self._set_paused(False),
            "help": lambda args: self.state.set_view(BodyView.HELP),
            "clear": lambda args: self.state.clear_events(),
            "diag": lambda args: self.show_report(),
            "logs": lambda args: self.state.set_view(BodyView.LOGS),
            "quit": lambda args: self.quit(),
            "exit": lambda args: self.quit(),
        }

    # --- Loop --------------------------------------------------------------

    async def run(self) -> None:
        logger.info("Input dispatcher started")
        poll = self.state.config.input_poll_interval
        loop = asyncio.get_running_loop()
        while self.state.is_running:
            key = await loop.run_in_executor(self._executor, self.terminal.poll_key, poll)
            if key.kind is KeyKind.UNRECOGNIZED or not self.state.is_running:
                continue
            try:
                self.handle_key(key)
            except Exception as e:
                logger.exception(f"Error handling key {key}: {e}")
                self.state.record_error(e, context="Input handling")
        logger.info("Input dispatcher stopped")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def handle_key(self, key: Key) -> None:
        mode = self.state.mutate(
            lambda s: "wizard" if s.wizard is not None else "command" if s.command_buffer is not None else "instant"
        )
        if mode == "wizard":
            self.wizard_key(key)
        elif mode == "command":
            self.command_key(key)
        else:
            self.instant_key(key)
        self.state.request_render()

    # --- Instant mode ------------------------------------------------------

    def instant_key(self, key: Key) -> None:
        if key.kind is KeyKind.UP:
            self.state.select_model(-1)
        elif key.kind is KeyKind.DOWN:
            self.state.select_model(1)
        elif key.kind is KeyKind.ENTER:
            self.state.set_view(BodyView.MODEL_DETAILS)
        elif key.kind is KeyKind.CHAR:
            action = self._instant.get(key.char.lower())
            if action is not None:
                action()

    def quit(self) -> None:
        logger.info("Quit requested")
        self.state.add_event(EventLevel.INFO, "Shutting down")
        self.state.shutdown()

    def show_report(self) -> None:
        self.reporter.report()

    # --- Command mode ------------------------------------------------------

    def begin_command(self) -> None:
        def begin(state: DashboardState) -> None:
            state.command_buffer = ""

        self.state.mutate(begin)

    def command_key(self, key: Key) -> None:
        if key.kind is KeyKind.ESCAPE:
            self.state.mutate(_clear_command)
        elif key.kind is KeyKind.ENTER:
            command = self.state.mutate(_clear_command)
            self.execute_command(command or "")
        elif key.kind is KeyKind.BACKSPACE:

            def backspace(state: DashboardState) -> None:
                state.command_buffer = (state.command_buffer or "")[:-1]

            self.state.mutate(backspace)
        elif key.kind is KeyKind.CHAR:

            def append(state: DashboardState) -> None:
                state.command_buffer = (state.command_buffer or "") + key.char

            self.state.mutate(append)

    def execute_command(self, text: str) -> bool:
        """Run ``/name [args]``. Returns False for unknown commands."""
        words = text.strip().lstrip("/").split()
        if not words:
            return False
        name, args = words[0].lower(), words[1:]
        handler = self._commands.get(name)
        if handler is None:
            available = ", ".join(f"/{command}" for command in self._commands)
            self.state.add_event(EventLevel.WARNING, f"Unknown command /{name}. Available: {available}")
            return False
        logger.debug(f"Executing command /{name} {' '.join(args)}".rstrip())
        handler(args)
        return True

    # --- Wizard mode -------------------------------------------------------

    def open_wizard(self) -> None:
        def open_(state: DashboardState) -> None:
            state.wizard = WizardState()
            state.command_buffer = None
            state.view = BodyView.WIZARD
            state.show_help = False

        self.state.mutate(open_)
        self.state.add_event(EventLevel.INFO, "New model wizard opened")

    def wizard_key(self, key: Key) -> None:
        if key.kind is KeyKind.ESCAPE:
            self.state.mutate(_close_wizard)
            self.state.add_event(EventLevel.INFO, "Model wizard cancelled")
            return
        outcome = self.state.mutate(lambda s: _apply_wizard_key(s.wizard, key) if s.wizard is not None else None)
        if outcome == "finish":
            self.create_model()
        elif isinstance(outcome, str) and outcome.startswith("warn:"):
            self.state.add_event(EventLevel.WARNING, outcome[5:])

    def create_model(self) -> ModelInfo | None:
        def create(state: DashboardState) -> ModelInfo | str | None:
            wizard = state.wizard
            if wizard is None:
                return None
            name = wizard.model_name.strip()
            if any(model.name == name for model in state.models):
                wizard.step = 1
                return f"A model named {name} already exists"
            model = ModelInfo(name=name, model_type=wizard.model_type)
            state.models.append(model)
            state.selected_model = len(state.models) - 1
            _close_wizard(state)
            state.view = BodyView.MODEL_DETAILS
            return model

        result = self.state.mutate(create)
        if isinstance(result, str):
            self.state.add_event(EventLevel.WARNING, result)
            return None
        if result is not None:
            self.state.add_event(EventLevel.SUCCESS, f"Created model {result.name} ({result.model_type})")
        return result

    # --- Dispatch ----------------------------------------------------------

    def _dispatch(self, command: str, args: list[str] | None = None) -> None:
        orchestrator = self.orchestrator
        if command == "download":
            coro = orchestrator.download(args or None)
        elif command == "train":
            coro = orchestrator.train()
        elif command == "predict":
            coro = orchestrator.predict()
        elif command == "submit":
            coro = orchestrator.submit()
        elif command == "pipeline":
            coro = orchestrator.run_pipeline()
        elif command == "refresh":
            coro = self._refresh()
        else:
            raise ValueError(f"unknown pipeline command {command}")
        orchestrator.dispatch(coro, name=command)

    def _stake(self, args: list[str]) -> None:
        if not args:
            self.state.add_event(EventLevel.ERROR, "Usage: /stake <amount>")
            return
        try:
            amount = float(args[0])
        except ValueError:
            self.state.add_event(EventLevel.ERROR, f"Invalid stake amount: {args[0]}")
            return
        self.orchestrator.dispatch(self.orchestrator.stake(amount), name="stake")

    async def _refresh(self) -> None:
        self.state.add_event(EventLevel.INFO, "Refreshing models and network status")
        if self.health is not None:
            await self.health.check_network()
            await self.health.refresh_models()
        else:
            await self.orchestrator.refresh_models()

    def _set_paused(self, paused: bool) -> None:
        if self.state.mutate(lambda s: s.paused) != paused:
            self.state.toggle_pause()


def _clear_command(state: DashboardState) -> str | None:
    command = state.command_buffer
    state.command_buffer = None
    return command


def _close_wizard(state: DashboardState) -> None:
    state.wizard = None
    state.view = BodyView.HELP
    state.show_help = True


def _adjust(wizard: WizardState, direction: int) -> None:
    attribute, step, low, high = WIZARD_PARAMETERS[wizard.selected_field]
    value = getattr(wizard, attribute) + direction * step
    value = max(low, min(high, value))
    if isinstance(step, float):
        value = round(value, 4)
    setattr(wizard, attribute, value)


def _apply_wizard_key(wizard: WizardState, key: Key) -> str | None:
    """Apply one key to the wizard form.

    Returns ``"finish"`` when the final step is confirmed, ``"warn:<text>"``
    when the key was rejected, otherwise None.
    """
    if wizard.step == 1:
        if key.kind is KeyKind.CHAR and len(wizard.model_name) < MAX_NAME_LENGTH:
            wizard.model_name += key.char
        elif key.kind is KeyKind.BACKSPACE:
            wizard.model_name = wizard.model_name[:-1]
        elif key.kind is KeyKind.ENTER:
            if not wizard.model_name.strip():
                return "warn:Model name cannot be empty"
            wizard.step = 2
    elif wizard.step == 2:
        index = MODEL_TYPES.index(wizard.model_type)
        if key.kind is KeyKind.CHAR and key.char in "1234":
            wizard.model_type = MODEL_TYPES[int(key.char) - 1]
        elif key.kind is KeyKind.UP:
            wizard.model_type = MODEL_TYPES[(index - 1) % len(MODEL_TYPES)]
        elif key.kind is KeyKind.DOWN:
            wizard.model_type = MODEL_TYPES[(index + 1) % len(MODEL_TYPES)]
        elif key.kind is KeyKind.ENTER:
            wizard.step = 3
    elif wizard.step == 3:
        if key.kind is KeyKind.UP:
            wizard.selected_field = (wizard.selected_field - 1) % len(WIZARD_PARAMETERS)
        elif key.kind is KeyKind.DOWN:
            wizard.selected_field = (wizard.selected_field + 1) % len(WIZARD_PARAMETERS)
        elif key.kind is KeyKind.RIGHT:
            _adjust(wizard, 1)
        elif key.kind is KeyKind.LEFT:
            _adjust(wizard, -1)
        elif key.kind is KeyKind.ENTER:
            wizard.step = 4
    elif wizard.step == 4:
        if key.kind is KeyKind.CHAR and key.char == " ":
            wizard.neutralize = not wizard.neutralize
        elif key.kind in (KeyKind.LEFT, KeyKind.RIGHT):
            delta = 0.05 if key.kind is KeyKind.RIGHT else -0.05
            wizard.neutralize_proportion = round(max(0.0, min(1.0, wizard.neutralize_proportion + delta)), 2)
        elif key.kind is KeyKind.ENTER:
            wizard.step = WIZARD_STEPS
    elif key.kind is KeyKind.ENTER:
        return "finish"
    return None
