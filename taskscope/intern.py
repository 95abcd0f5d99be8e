"""A simple string interner."""

from __future__ import annotations

import functools
import logging
import weakref

_log = logging.getLogger(__name__)


@functools.total_ordering
class InternedStr:
    """A shared, immutable string handed out by ``Strings``."""

    __slots__ = ("_value", "__weakref__")

    def __init__(self, value: str) -> None:
        self._value = value

    @property
    def value(self) -> str:
        return self._value

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"InternedStr({self._value!r})"

    def __len__(self) -> int:
        return len(self._value)

    def __hash__(self) -> int:
        return hash(self._value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, InternedStr):
            return self._value == other._value
        if isinstance(other, str):
            return self._value == other
        return NotImplemented

    def __lt__(self, other: object) -> bool:
        if isinstance(other, InternedStr):
            return self._value < other._value
        return NotImplemented


class Strings:
    """Hands out one shared ``InternedStr`` per distinct string."""

    def __init__(self) -> None:
        self._strings: dict[str, InternedStr] = {}

    def string_ref(self, string: str | InternedStr) -> InternedStr:
        """Return the interned copy of ``string``, interning it if needed."""
        return self.string(str(string))

    def string(self, string: str) -> InternedStr:
        """Return the interned copy of ``string``, interning it if needed."""
        interned = self._strings.get(string)
        if interned is None:
            interned = InternedStr(string)
            self._strings[string] = interned
        return interned

    def retain_referenced(self) -> None:
        """Drop any interned strings that are no longer referenced elsewhere."""
        before = len(self._strings)
        survivors = weakref.WeakValueDictionary(self._strings)
        self._strings.clear()
        self._strings = dict(survivors)
        after = len(self._strings)
        if after < before:
            _log.debug("dropped %d un-referenced strings; %d remain", before - after, after)

    def __len__(self) -> int:
        return len(self._strings)