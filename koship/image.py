"""Container images and image indexes in the OCI and Docker manifest formats."""

from __future__ import annotations

import enum
import gzip
import hashlib
import io
import json
import os
import re
import tarfile
from dataclasses import dataclass, field
from typing import Union


class MediaType(str, enum.Enum):
    """Media types of manifests, configs and layers."""

    OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
    DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
    OCI_MANIFEST_SCHEMA1 = "application/vnd.oci.image.manifest.v1+json"
    DOCKER_MANIFEST_SCHEMA2 = "application/vnd.docker.distribution.manifest.v2+json"
    OCI_CONFIG_JSON = "application/vnd.oci.image.config.v1+json"
    DOCKER_CONFIG_JSON = "application/vnd.docker.container.image.v1+json"
    OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"
    DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"


INDEX_MEDIA_TYPES = frozenset({MediaType.OCI_IMAGE_INDEX, MediaType.DOCKER_MANIFEST_LIST})
IMAGE_MEDIA_TYPES = frozenset({MediaType.OCI_MANIFEST_SCHEMA1, MediaType.DOCKER_MANIFEST_SCHEMA2})

_HEX = re.compile(r"[a-f0-9]{64}")


def _encode(document: dict) -> bytes:
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class Hash:
    """A content digest such as ``sha256:<hex>``."""

    algorithm: str
    hex: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"

    @classmethod
    def parse(cls, text: str) -> Hash:
        """Parse ``sha256:<hex>``."""
        algorithm, sep, hex_part = text.partition(":")
        if not sep or algorithm != "sha256" or not _HEX.fullmatch(hex_part):
            raise ValueError(f"cannot parse hash: {text!r}")
        return cls(algorithm, hex_part)

    @classmethod
    def of(cls, data: bytes) -> Hash:
        return cls("sha256", hashlib.sha256(data).hexdigest())


@dataclass(frozen=True)
class Platform:
    """The operating system and architecture an image runs on."""

    os: str
    architecture: str
    variant: str = ""

    def _as_json(self) -> dict:
        document = {"architecture": self.architecture, "os": self.os}
        if self.variant:
            document["variant"] = self.variant
        return document


@dataclass(frozen=True)
class Descriptor:
    """A reference to content by media type, size and digest."""

    media_type: MediaType
    size: int
    digest: Hash
    platform: Platform | None = None

    def _as_json(self) -> dict:
        document = {
            "mediaType": MediaType(self.media_type).value,
            "size": self.size,
            "digest": str(self.digest),
        }
        if self.platform is not None:
            document["platform"] = self.platform._as_json()
        return document


@dataclass(frozen=True)
class Layer:
    """A compressed filesystem layer."""

    data: bytes
    diff_id: Hash
    media_type: MediaType = MediaType.DOCKER_LAYER
    digest: Hash = field(init=False)
    size: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "digest", Hash.of(self.data))
        object.__setattr__(self, "size", len(self.data))


@dataclass(eq=False)
class Image:
    """A single-platform image; compares by identity."""

    layers: tuple[Layer, ...]
    config: dict
    media_type: MediaType = MediaType.DOCKER_MANIFEST_SCHEMA2

    def raw_config(self) -> bytes:
        return _encode(self.config)

    def manifest(self) -> dict:
        raw_config = self.raw_config()
        config_type = (
            MediaType.OCI_CONFIG_JSON
            if self.media_type is MediaType.OCI_MANIFEST_SCHEMA1
            else MediaType.DOCKER_CONFIG_JSON
        )
        return {
            "schemaVersion": 2,
            "mediaType": self.media_type.value,
            "config": Descriptor(config_type, len(raw_config), Hash.of(raw_config))._as_json(),
            "layers": [
                Descriptor(layer.media_type, layer.size, layer.digest)._as_json()
                for layer in self.layers
            ],
        }

    def raw_manifest(self) -> bytes:
        return _encode(self.manifest())

    def digest(self) -> Hash:
        return Hash.of(self.raw_manifest())

    def blobs(self) -> dict[Hash, bytes]:
        """Map each blob digest (config first, then layers) to its bytes."""
        raw_config = self.raw_config()
        blobs = {Hash.of(raw_config): raw_config}
        blobs.update((layer.digest, layer.data) for layer in self.layers)
        return blobs


@dataclass(eq=False)
class ImageIndex:
    """A list of images or nested indexes, each with an optional platform."""

    entries: tuple[tuple[Union[Image, "ImageIndex"], Platform | None], ...]
    media_type: MediaType = MediaType.OCI_IMAGE_INDEX

    def index_manifest(self) -> dict:
        manifests = []
        for child, platform in self.entries:
            raw = child.raw_manifest()
            manifests.append(
                Descriptor(child.media_type, len(raw), Hash.of(raw), platform)._as_json()
            )
        return {"schemaVersion": 2, "mediaType": self.media_type.value, "manifests": manifests}

    def raw_manifest(self) -> bytes:
        return _encode(self.index_manifest())

    def digest(self) -> Hash:
        return Hash.of(self.raw_manifest())

    def image(self, digest: Hash) -> Image:
        """Return the child image with the given manifest digest."""
        for child, _ in self.entries:
            if isinstance(child, Image) and child.digest() == digest:
                return child
        raise KeyError(f"no image with digest {digest} in index")


def _random_layer(byte_size: int) -> Layer:
    payload = os.urandom(byte_size)
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name=f"random_file_{os.urandom(8).hex()}")
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))
    uncompressed = buffer.getvalue()
    return Layer(gzip.compress(uncompressed, mtime=0), Hash.of(uncompressed))


def random_image(byte_size: int, layers: int) -> Image:
    """Build an image of ``layers`` layers, each holding ``byte_size`` random bytes."""
    made = tuple(_random_layer(byte_size) for _ in range(layers))
    config = {
        "architecture": "amd64",
        "os": "linux",
        "rootfs": {"type": "layers", "diff_ids": [str(layer.diff_id) for layer in made]},
    }
    return Image(made, config)


def random_index(byte_size: int, layers: int, count: int) -> ImageIndex:
    """Build an index of ``count`` random images without platforms."""
    return ImageIndex(tuple((random_image(byte_size, layers), None) for _ in range(count)))