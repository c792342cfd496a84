"""Loading images into the nodes of a kind cluster."""

from __future__ import annotations

import io
import logging
import os
import tarfile
from typing import BinaryIO, Callable, Iterable, Protocol, Sequence

from koship.image import Image
from koship.names import Reference, Tag, parse_tag
from koship.publisher import PublishError, Publisher, Result, normalize_import_path, select_platform_image
from koship.tarball import iter_tarball_members

logger = logging.getLogger(__name__)

Namer = Callable[[str, str], str]

KIND_DOMAIN = "kind.local"
DEFAULT_CLUSTER_NAME = "kind"
CLUSTER_NAME_ENV_KEY = "KIND_CLUSTER_NAME"


class KindError(PublishError):
    """Raised when an image cannot be loaded into or tagged on kind nodes."""


class _Cmd(Protocol):
    def set_stdin(self, stream: BinaryIO) -> "_Cmd": ...

    def run(self) -> None: ...


class _Node(Protocol):
    def command(self, name: str, *args: str) -> _Cmd: ...


class _Provider(Protocol):
    def list_internal_nodes(self, name: str) -> Sequence[_Node]: ...


def _get_nodes(provider: _Provider) -> list[_Node]:
    cluster_name = os.environ.get(CLUSTER_NAME_ENV_KEY) or DEFAULT_CLUSTER_NAME
    nodes = list(provider.list_internal_nodes(cluster_name))
    if not nodes:
        raise KindError(f'no nodes found for cluster "{DEFAULT_CLUSTER_NAME}"')
    return nodes


def _image_tarball(tag: Tag, image: Image) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, data in iter_tarball_members({tag: image}):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def tag(provider: _Provider, src: Tag, dest: Tag) -> None:
    """Add the tag ``dest`` to the existing image ``src`` on every node."""
    for node in _get_nodes(provider):
        command = node.command(
            "ctr", "--namespace=k8s.io", "images", "tag", "--force", str(src), str(dest)
        )
        try:
            command.run()
        except Exception as exc:
            raise KindError(f"failed to tag image: {exc}") from exc


def write(provider: _Provider, tag: Tag, image: Image) -> None:
    """Import ``image`` as ``tag`` into every node; stops at the first failure."""
    nodes = _get_nodes(provider)
    try:
        data = _image_tarball(tag, image)
    except Exception as exc:
        raise KindError(f"failed to write intermediate tarball representation: {exc}") from exc
    for node in nodes:
        command = node.command("ctr", "--namespace=k8s.io", "images", "import", "-")
        command = command.set_stdin(io.BytesIO(data))
        try:
            command.run()
        except Exception as exc:
            raise KindError(f'failed to load image to node "{node}": {exc}') from exc


class KindPublisher(Publisher):
    """Loads images into kind nodes under the ``kind.local`` domain."""

    def __init__(self, provider: _Provider, namer: Namer, tags: Iterable[str]) -> None:
        self._provider = provider
        self._namer = namer
        self._tags = tuple(tags)

    def publish(self, result: Result, ref: str) -> Reference:
        path = normalize_import_path(ref)
        # An index cannot be loaded into kind, so pick the target platform's image.
        image = select_platform_image(result, path)
        name = self._namer(KIND_DOMAIN, path)
        digest_tag = parse_tag(f"{name}:{image.digest().hex}")

        logger.info("Loading %s", digest_tag)
        write(self._provider, digest_tag, image)
        logger.info("Loaded %s", digest_tag)

        for tag_name in self._tags:
            logger.info("Adding tag %s", tag_name)
            tag(self._provider, digest_tag, parse_tag(f"{name}:{tag_name}"))
            logger.info("Added tag %s", tag_name)

        return digest_tag

    def close(self) -> None:
        return None