"""Lock wrappers whose guards give scoped access to the protected value."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class Guard(Generic[T]):
    """Access to a locked value; releases the lock on exit or ``release()``."""

    def __init__(self, owner: Any, release: Callable[[], None], *, writable: bool = True) -> None:
        self._owner = owner
        self._release = release
        self._writable = writable
        self._held = True

    def _check(self) -> None:
        if not self._held:
            raise RuntimeError("guard has already been released")

    @property
    def value(self) -> T:
        self._check()
        return self._owner._value

    @value.setter
    def value(self, new: T) -> None:
        self._check()
        if not self._writable:
            raise AttributeError("a read guard cannot replace the protected value")
        self._owner._value = new

    @property
    def held(self) -> bool:
        return self._held

    def release(self) -> None:
        """Release the lock; releasing twice does nothing."""
        if self._held:
            self._held = False
            self._release()

    def __enter__(self) -> Guard[T]:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class Mutex(Generic[T]):
    """A value behind an exclusive lock."""

    def __init__(self, value: T) -> None:
        self._value = value
        self._lock = threading.Lock()

    def lock(self) -> Guard[T]:
        """Block until the lock is held and return a guard for the value."""
        self._lock.acquire()
        return Guard(self, self._lock.release)


class RwLock(Generic[T]):
    """A value shared by many readers or held by one writer."""

    def __init__(self, value: T) -> None:
        self._value = value
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    def _release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def _release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    def _read_guard(self) -> Guard[T]:
        self._readers += 1
        return Guard(self, self._release_read, writable=False)

    def _write_guard(self) -> Guard[T]:
        self._writer = True
        return Guard(self, self._release_write)

    def read(self) -> Guard[T]:
        """Block until no writer holds the lock and return a read guard."""
        with self._cond:
            self._cond.wait_for(lambda: not self._writer)
            return self._read_guard()

    def try_read(self) -> Guard[T] | None:
        """Return a read guard, or ``None`` if a writer holds the lock."""
        with self._cond:
            if self._writer:
                return None
            return self._read_guard()

    def write(self) -> Guard[T]:
        """Block until the lock is free and return a write guard."""
        with self._cond:
            self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            return self._write_guard()

    def try_write(self) -> Guard[T] | None:
        """Return a write guard, or ``None`` if the lock is held."""
        with self._cond:
            if self._writer or self._readers:
                return None
            return self._write_guard()