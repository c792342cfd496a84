import pytest

from koship.image import random_image
from koship.multi import MultiPublisher
from koship.names import parse_digest
from koship.publisher import PublishError, Publisher, normalize_import_path


class FakePublisher(Publisher):
    def __init__(self, host, publish_error=None, close_error=None):
        self.host = host
        self.publish_error = publish_error
        self.close_error = close_error
        self.published = []
        self.closed = False

    def publish(self, result, ref):
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append(ref)
        return parse_digest(f"{self.host}/{normalize_import_path(ref)}@{result.digest()}")

    def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


IMPORT_PATH = "github.com/Google/go-containerregistry/cmd/crane"


def test_multi_publishes_to_all_and_last_wins():
    image = random_image(1024, 1)
    first = FakePublisher("example.com/blah")
    second = FakePublisher("example.com/other")
    publisher = MultiPublisher(first, second)
    ref = publisher.publish(image, IMPORT_PATH)
    assert first.published == [IMPORT_PATH]
    assert second.published == [IMPORT_PATH]
    assert str(ref).startswith("example.com/other/")
    assert ref.digest == image.digest()
    publisher.close()
    assert first.closed and second.closed


def test_multi_zero():
    image = random_image(1024, 1)
    with pytest.raises(PublishError, match="zero publishers"):
        MultiPublisher().publish(image, "foo")


def test_multi_stops_at_first_error():
    image = random_image(64, 1)
    failing = FakePublisher("example.com/a", publish_error=RuntimeError("nope"))
    later = FakePublisher("example.com/b")
    with pytest.raises(RuntimeError, match="nope"):
        MultiPublisher(failing, later).publish(image, "foo")
    assert later.published == []


def test_multi_close_closes_all_and_raises_last_error():
    first = FakePublisher("example.com/a", close_error=OSError("first"))
    middle = FakePublisher("example.com/b")
    last = FakePublisher("example.com/c", close_error=OSError("last"))
    with pytest.raises(OSError, match="last"):
        MultiPublisher(first, middle, last).close()
    assert first.closed and middle.closed and last.closed