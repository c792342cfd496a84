"""A publisher that fans out to several publishers, like tee(1)."""

from __future__ import annotations

from koship.names import Reference
from koship.publisher import PublishError, Publisher, Result


class MultiPublisher(Publisher):
    """Publishes to every publisher in turn; the last one's reference wins."""

    def __init__(self, *publishers: Publisher) -> None:
        self._publishers = publishers

    def publish(self, result: Result, ref: str) -> Reference:
        if not self._publishers:
            raise PublishError("MultiPublisher configured with zero publishers")
        reference = None
        for publisher in self._publishers:
            reference = publisher.publish(result, ref)
        return reference

    def close(self) -> None:
        """Close every publisher; re-raise the last error seen, if any."""
        error: Exception | None = None
        for publisher in self._publishers:
            try:
                publisher.close()
            except Exception as exc:
                error = exc
        if error is not None:
            raise error