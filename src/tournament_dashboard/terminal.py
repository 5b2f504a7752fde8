"""
Terminal drivers.

The dashboard talks to the terminal only through :class:`Terminal`. The
production driver wraps ``blessed``; :class:`FakeTerminal` scripts keystrokes
and records mode transitions so the input and render loops can be tested
without a TTY.
"""

from __future__ import annotations

import contextlib
import sys
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Iterable, Iterator, TextIO

from blessed import Terminal as BlessedBackend
from loguru import logger

from .keys import NO_KEY, Key, decode_key, from_keystroke

ESC_DELAY = 0.05


class Terminal(ABC):
    """Minimal terminal surface used by the dashboard."""

    @abstractmethod
    def enter_raw_mode(self) -> None: ...

    @abstractmethod
    def exit_raw_mode(self) -> None: ...

    @abstractmethod
    def poll_key(self, timeout: float) -> Key: ...

    @abstractmethod
    def hide_cursor(self) -> None: ...

    @abstractmethod
    def show_cursor(self) -> None: ...

    @abstractmethod
    def write(self, text: str) -> None: ...

    @abstractmethod
    def size(self) -> tuple[int, int]:
        """Return ``(columns, rows)``."""

    # Control sequences. An empty string means the capability is missing and
    # the frame is emitted as plain lines.

    def clear_sequence(self) -> str:
        return ""

    def move_sequence(self, row: int) -> str:
        return ""

    def clear_eol_sequence(self) -> str:
        return ""

    def save_cursor_sequence(self) -> str:
        return ""

    def restore_cursor_sequence(self) -> str:
        return ""


class BlessedTerminal(Terminal):
    """Production driver backed by ``blessed``."""

    def __init__(self, term: BlessedBackend | None = None, *, stream: TextIO | None = None) -> None:
        self.term = term or BlessedBackend()
        self._stream = stream or sys.__stdout__
        self._modes: contextlib.ExitStack | None = None
        self._lock = threading.Lock()

    def enter_raw_mode(self) -> None:
        if self._modes is not None:
            return
        stack = contextlib.ExitStack()
        stack.enter_context(self.term.cbreak())
        stack.enter_context(self.term.fullscreen())
        self._modes = stack
        logger.debug("Terminal switched to cbreak mode")

    def exit_raw_mode(self) -> None:
        if self._modes is None:
            return
        modes, self._modes = self._modes, None
        modes.close()
        logger.debug("Terminal restored to normal mode")

    def poll_key(self, timeout: float) -> Key:
        keystroke = self.term.inkey(timeout=timeout, esc_delay=ESC_DELAY)
        return from_keystroke(keystroke)

    def hide_cursor(self) -> None:
        self.write(self.term.hide_cursor)

    def show_cursor(self) -> None:
        self.write(self.term.normal_cursor)

    def write(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._stream.write(text)
            self._stream.flush()

    def size(self) -> tuple[int, int]:
        return self.term.width or 80, self.term.height or 24

    def clear_sequence(self) -> str:
        return self.term.home + self.term.clear

    def move_sequence(self, row: int) -> str:
        return self.term.move_xy(0, row)

    def clear_eol_sequence(self) -> str:
        return self.term.clear_eol

    def save_cursor_sequence(self) -> str:
        return self.term.save

    def restore_cursor_sequence(self) -> str:
        return self.term.restore


class FakeTerminal(Terminal):
    """Scripted terminal for tests.

    Keys queued with :meth:`feed` are returned by :meth:`poll_key`, one per
    call. ``transitions`` records ``"raw"``/``"normal"`` mode switches and
    ``timeline`` interleaves them with ``"write"`` for every frame that lands.
    """

    def __init__(
        self,
        keys: Iterable[str | Key] = (),
        *,
        columns: int = 100,
        rows: int = 40,
        write_delay: float = 0.0,
    ) -> None:
        self._keys: deque[Key] = deque()
        self._columns = columns
        self._rows = rows
        self.write_delay = write_delay
        self.transitions: list[str] = []
        self.timeline: list[str] = []
        self.writes: list[str] = []
        self.cursor_visible = True
        self.raw = False
        self.feed(*keys)

    def feed(self, *keys: str | Key) -> None:
        for key in keys:
            self._keys.append(key if isinstance(key, Key) else decode_key(key))

    def type_text(self, text: str) -> None:
        self.feed(*text)

    def resize(self, columns: int, rows: int) -> None:
        self._columns = columns
        self._rows = rows

    def enter_raw_mode(self) -> None:
        if not self.raw:
            self.raw = True
            self.transitions.append("raw")
            self.timeline.append("raw")

    def exit_raw_mode(self) -> None:
        if self.raw:
            self.raw = False
            self.transitions.append("normal")
            self.timeline.append("normal")

    def poll_key(self, timeout: float) -> Key:
        if self._keys:
            return self._keys.popleft()
        time.sleep(min(timeout, 0.01))
        return NO_KEY

    def hide_cursor(self) -> None:
        self.cursor_visible = False

    def show_cursor(self) -> None:
        self.cursor_visible = True

    def write(self, text: str) -> None:
        if self.write_delay:
            time.sleep(self.write_delay)
        self.writes.append(text)
        self.timeline.append("write")

    def size(self) -> tuple[int, int]:
        return self._columns, self._rows

    @property
    def pending_keys(self) -> int:
        return len(self._keys)


def restore_terminal(terminal: Terminal) -> None:
    """Best-effort return to normal mode with a visible cursor."""
    try:
        terminal.exit_raw_mode()
    except Exception as e:
        logger.exception(f"Failed to restore terminal mode: {e}")
        try:
            terminal.write(terminal.clear_sequence())
        except Exception as e2:
            logger.error(f"Failed to clear screen after restore failure: {e2}")
    try:
        terminal.show_cursor()
    except Exception as e:
        logger.error(f"Failed to show cursor: {e}")


@contextlib.contextmanager
def raw_mode(terminal: Terminal) -> Iterator[Terminal]:
    """Hold the terminal in raw mode with a hidden cursor for the duration of the block."""
    terminal.enter_raw_mode()
    try:
        terminal.hide_cursor()
        yield terminal
    finally:
        restore_terminal(terminal)
