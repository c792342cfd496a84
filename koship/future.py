"""A result computed once on a background thread and shared by every caller."""

from __future__ import annotations

import threading
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class Future(Generic[T]):
    """Runs ``work`` on a thread; ``get`` blocks for its outcome."""

    def __init__(self, work: Callable[[], T]) -> None:
        self._done = threading.Event()
        self._value: T | None = None
        self._error: Exception | None = None
        threading.Thread(target=self._run, args=(work,), daemon=True).start()

    def _run(self, work: Callable[[], T]) -> None:
        try:
            self._value = work()
        except Exception as exc:
            self._error = exc
        finally:
            self._done.set()

    def get(self) -> T:
        """Wait for the work and return its value, or raise its error."""
        self._done.wait()
        if self._error is not None:
            raise self._error
        return self._value