"""The common publisher interface and helpers shared by publishers."""

from __future__ import annotations

import abc
import os
from typing import Union

from koship.image import Image, ImageIndex
from koship.names import Reference

STRICT_SCHEME = "ko://"

Result = Union[Image, ImageIndex]


class PublishError(Exception):
    """Raised when a build result cannot be published."""


class Publisher(abc.ABC):
    """Publishes build results and returns the reference they are reachable by."""

    @abc.abstractmethod
    def publish(self, result: Result, ref: str) -> Reference:
        """Publish ``result`` under a name derived from the import path ``ref``."""

    @abc.abstractmethod
    def close(self) -> None:
        """Finish publishing; some publishers write their output here."""

    def __enter__(self) -> Publisher:
        return self

    def __exit__(self, *args) -> None:
        self.close()


def normalize_import_path(ref: str) -> str:
    """Drop the strict scheme and lower-case the import path."""
    if ref.startswith(STRICT_SCHEME):
        ref = ref[len(STRICT_SCHEME):]
    return ref.lower()


def select_platform_image(
    result: Result, ref: str, goos: str | None = None, goarch: str | None = None
) -> Image:
    """Return ``result`` as a single image, picking the target platform from an index.

    The platform defaults to $GOOS/$GOARCH, then linux/amd64.
    """
    if isinstance(result, Image):
        return result
    if not isinstance(result, ImageIndex):
        raise PublishError(f"failed to interpret {ref} result as image: {result!r}")
    goos = goos or os.environ.get("GOOS") or "linux"
    goarch = goarch or os.environ.get("GOARCH") or "amd64"
    for manifest in result.index_manifest()["manifests"]:
        platform = manifest.get("platform")
        if platform is None:
            continue
        if platform.get("os") != goos or platform.get("architecture") != goarch:
            continue
        from koship.image import Hash

        return result.image(Hash.parse(manifest["digest"]))
    raise PublishError(f"failed to find {goos}/{goarch} image in index for image: {ref}")