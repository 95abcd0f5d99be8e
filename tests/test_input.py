import pytest

from taskscope.input import (
    KeyEvent,
    KeyEventKind,
    KeyModifiers,
    SpecialKey,
    is_esc,
    is_help_toggle,
    is_space,
    should_ignore_key_event,
    should_quit,
)


def test_ignore_key_repeat_and_release_events():
    press = KeyEvent("a", KeyModifiers.NONE, KeyEventKind.PRESS)
    assert should_ignore_key_event(press) is False
    release = KeyEvent("a", KeyModifiers.NONE, KeyEventKind.RELEASE)
    assert should_ignore_key_event(release) is True
    repeat = KeyEvent("a", KeyModifiers.NONE, KeyEventKind.REPEAT)
    assert should_ignore_key_event(repeat) is True


def test_non_key_events_are_not_ignored():
    assert should_ignore_key_event(("resize", 80, 24)) is False


@pytest.mark.parametrize(
    "event, expected",
    [
        (KeyEvent("q"), True),
        (KeyEvent("q", KeyModifiers.CONTROL), True),
        (KeyEvent("c", KeyModifiers.CONTROL), True),
        (KeyEvent("d", KeyModifiers.CONTROL | KeyModifiers.SHIFT), True),
        (KeyEvent("c"), False),
        (KeyEvent("d", KeyModifiers.ALT), False),
        (KeyEvent("x", KeyModifiers.CONTROL), False),
        (KeyEvent(SpecialKey.ESC), False),
        ("not a key", False),
    ],
)
def test_should_quit(event, expected):
    assert should_quit(event) is expected


def test_is_space():
    assert is_space(KeyEvent(" ")) is True
    assert is_space(KeyEvent("s")) is False


def test_is_help_toggle():
    assert is_help_toggle(KeyEvent("?")) is True
    assert is_help_toggle(KeyEvent("/")) is False


def test_is_esc():
    assert is_esc(KeyEvent(SpecialKey.ESC)) is True
    assert is_esc(KeyEvent(SpecialKey.ENTER)) is False
    assert is_esc(KeyEvent("e")) is False