"""A publisher wrapper that shares results for repeated identical publishes."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from koship.future import Future
from koship.names import Reference
from koship.publisher import Publisher, Result


@dataclass
class _Entry:
    result: Result
    future: Future


class CachingPublisher(Publisher):
    """Shares the publish of a reference until a different result object arrives."""

    def __init__(self, inner: Publisher) -> None:
        self._inner = inner
        self._lock = threading.Lock()
        self._results: dict[str, _Entry] = {}

    def publish(self, result: Result, ref: str) -> Reference:
        with self._lock:
            entry = self._results.get(ref)
            if entry is None or entry.result is not result:
                entry = _Entry(result, Future(lambda: self._inner.publish(result, ref)))
                self._results[ref] = entry
        return entry.future.get()

    def close(self) -> None:
        self._inner.close()