"""Publishing images into a multi-reference ``docker save`` style tarball."""

from __future__ import annotations

import io
import json
import logging
import os
import tarfile
from typing import Callable, Iterable, Iterator, Mapping, Union

from koship.image import Hash, Image
from koship.names import Reference, Tag, parse_digest, parse_reference
from koship.publisher import PublishError, Publisher, Result, normalize_import_path

logger = logging.getLogger(__name__)

Namer = Callable[[str, str], str]

_DEFAULT_TAG = "latest"


def iter_tarball_members(refs: Mapping[Reference, Image]) -> Iterator[tuple[str, bytes]]:
    """Yield ``(name, data)`` for every file of the tarball, ``manifest.json`` last.

    Images are written once per digest and layers once per digest; tag
    references of the same image share one manifest entry.
    """
    grouped: dict[Hash, tuple[Image, list[str]]] = {}
    for reference, image in refs.items():
        _, tags = grouped.setdefault(image.digest(), (image, []))
        if isinstance(reference, Tag):
            tags.append(str(reference))

    written: set[str] = set()
    manifest = []
    for image, tags in grouped.values():
        raw_config = image.raw_config()
        config_name = str(Hash.of(raw_config))
        if config_name not in written:
            written.add(config_name)
            yield config_name, raw_config
        layer_files = []
        for layer in image.layers:
            layer_name = f"{layer.digest.hex}.tar.gz"
            layer_files.append(layer_name)
            if layer_name in written:
                continue
            written.add(layer_name)
            yield layer_name, layer.data
        manifest.append(
            {"Config": config_name, "RepoTags": sorted(tags), "Layers": layer_files}
        )
    yield "manifest.json", json.dumps(manifest).encode("utf-8")


def write_tarball(
    path: Union[str, os.PathLike], refs: Mapping[Reference, Image]
) -> None:
    """Write ``refs`` to ``path`` as an uncompressed tarball."""
    with tarfile.open(path, "w") as archive:
        for name, data in iter_tarball_members(refs):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))


class TarballPublisher(Publisher):
    """Collects images by reference and writes them to one tarball on close."""

    def __init__(
        self,
        file: Union[str, os.PathLike],
        base: str,
        namer: Namer,
        tags: Iterable[str],
    ) -> None:
        self._file = file
        self._base = base
        self._namer = namer
        self._tags = tuple(tags)
        self._refs: dict[Reference, Image] = {}

    def publish(self, result: Result, ref: str) -> Reference:
        path = normalize_import_path(ref)
        # A tarball cannot hold an index, only single images.
        if not isinstance(result, Image):
            raise PublishError(f"failed to interpret {path} result as image: {result!r}")

        name = self._namer(self._base, path)
        for tag_name in self._tags:
            self._refs[parse_reference(f"{name}:{tag_name}")] = result

        digest = result.digest()
        if not self._tags:
            self._refs[parse_reference(f"{name}@{digest}")] = result

        reference = f"{name}@{digest}"
        if len(self._tags) == 1 and self._tags[0] != _DEFAULT_TAG:
            # A single explicit tag is probably a release: keep it in the reference.
            reference = f"{name}:{self._tags[0]}@{digest}"
        return parse_digest(reference)

    def close(self) -> None:
        logger.info("Saving %s", self._file)
        try:
            write_tarball(self._file, self._refs)
        except Exception as exc:
            logger.error("failed to save %r: %s", str(self._file), exc)
            raise
        logger.info("Saved %s", self._file)