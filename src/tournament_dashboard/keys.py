"""Keyboard decoding shared by the real and fake terminals."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class KeyKind(str, Enum):
    CHAR = "char"
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"
    ENTER = "enter"
    ESCAPE = "escape"
    BACKSPACE = "backspace"
    UNRECOGNIZED = "unrecognized"


@dataclass(slots=True, frozen=True)
class Key:
    kind: KeyKind
    char: str = ""

    @property
    def is_char(self) -> bool:
        return self.kind is KeyKind.CHAR


NO_KEY = Key(KeyKind.UNRECOGNIZED)

ESC = "\x1b"

_ARROWS = {
    "A": KeyKind.UP,
    "B": KeyKind.DOWN,
    "C": KeyKind.RIGHT,
    "D": KeyKind.LEFT,
}

# blessed keystroke names
_NAMED = {
    "KEY_UP": KeyKind.UP,
    "KEY_DOWN": KeyKind.DOWN,
    "KEY_LEFT": KeyKind.LEFT,
    "KEY_RIGHT": KeyKind.RIGHT,
    "KEY_ENTER": KeyKind.ENTER,
    "KEY_ESCAPE": KeyKind.ESCAPE,
    "KEY_BACKSPACE": KeyKind.BACKSPACE,
    "KEY_DELETE": KeyKind.BACKSPACE,
}


def decode_key(sequence: str) -> Key:
    """Decode the raw bytes of one keypress.

    Printable ASCII becomes ``CHAR``; ``ESC [ A..D`` (or ``ESC O A..D``) are
    arrows; a bare ESC is ``ESCAPE``; CR/LF is ``ENTER``; DEL/BS is
    ``BACKSPACE``. Anything else is ``UNRECOGNIZED``.
    """
    if not sequence:
        return NO_KEY
    if sequence == ESC:
        return Key(KeyKind.ESCAPE)
    if sequence.startswith(ESC):
        if len(sequence) == 3 and sequence[1] in "[O" and sequence[2] in _ARROWS:
            return Key(_ARROWS[sequence[2]])
        return NO_KEY
    if sequence in ("\r", "\n", "\r\n"):
        return Key(KeyKind.ENTER)
    if sequence in ("\x7f", "\x08"):
        return Key(KeyKind.BACKSPACE)
    if len(sequence) == 1 and " " <= sequence <= "~":
        return Key(KeyKind.CHAR, sequence)
    return NO_KEY


def from_keystroke(keystroke) -> Key:
    """Convert a ``blessed.keyboard.Keystroke`` into a :class:`Key`."""
    if not keystroke:
        return NO_KEY
    if keystroke.is_sequence:
        kind = _NAMED.get(keystroke.name or "")
        if kind is not None:
            return Key(kind)
    return decode_key(str(keystroke))
