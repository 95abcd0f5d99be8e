"""Keyboard event classification."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class KeyEventKind(enum.Enum):
    PRESS = "press"
    REPEAT = "repeat"
    RELEASE = "release"


class KeyModifiers(enum.Flag):
    NONE = 0
    SHIFT = enum.auto()
    CONTROL = enum.auto()
    ALT = enum.auto()
    SUPER = enum.auto()


class SpecialKey(enum.Enum):
    ESC = "esc"
    ENTER = "enter"
    BACKSPACE = "backspace"
    TAB = "tab"
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"
    HOME = "home"
    END = "end"
    PAGE_UP = "page_up"
    PAGE_DOWN = "page_down"
    DELETE = "delete"


@dataclass(frozen=True)
class KeyEvent:
    """A key event; ``code`` is a single character or a ``SpecialKey``."""

    code: str | SpecialKey
    modifiers: KeyModifiers = KeyModifiers.NONE
    kind: KeyEventKind = KeyEventKind.PRESS


def _key(event: Any) -> KeyEvent | None:
    return event if isinstance(event, KeyEvent) else None


def should_ignore_key_event(event: Any) -> bool:
    """True for key release and repeat events, which would duplicate presses."""
    key = _key(event)
    return key is not None and key.kind in (KeyEventKind.RELEASE, KeyEventKind.REPEAT)


def should_quit(event: Any) -> bool:
    """True for ``q``, or ``c``/``d`` with Control held."""
    key = _key(event)
    if key is None:
        return False
    if key.code == "q":
        return True
    return key.code in ("c", "d") and KeyModifiers.CONTROL in key.modifiers


def is_space(event: Any) -> bool:
    key = _key(event)
    return key is not None and key.code == " "


def is_help_toggle(event: Any) -> bool:
    key = _key(event)
    return key is not None and key.code == "?"


def is_esc(event: Any) -> bool:
    key = _key(event)
    return key is not None and key.code is SpecialKey.ESC