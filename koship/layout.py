"""Publishing images into an OCI image layout directory."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Union

from koship.image import IMAGE_MEDIA_TYPES, INDEX_MEDIA_TYPES, Hash, Image, ImageIndex, MediaType
from koship.names import Reference, parse_digest
from koship.publisher import PublishError, Publisher, Result

logger = logging.getLogger(__name__)


class OCILayout:
    """An OCI image layout on disk; created empty if the path holds none."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self._root = os.fspath(path)
        self.path = Path(self._root)
        try:
            self.index()
        except (OSError, ValueError):
            (self.path / "blobs").mkdir(parents=True, exist_ok=True)
            (self.path / "oci-layout").write_text('{"imageLayoutVersion":"1.0.0"}')
            self._write_index(
                {"schemaVersion": 2, "mediaType": MediaType.OCI_IMAGE_INDEX.value, "manifests": []}
            )

    def __str__(self) -> str:
        return self._root

    def _write_index(self, document: dict) -> None:
        (self.path / "index.json").write_text(json.dumps(document, indent=3))

    def index(self) -> dict:
        """Return the parsed ``index.json`` of the layout."""
        document = json.loads((self.path / "index.json").read_text())
        if not isinstance(document, dict) or not isinstance(document.get("manifests"), list):
            raise ValueError(f"{self._root} does not hold a valid image index")
        return document

    def _write_blob(self, digest: Hash, data: bytes) -> None:
        target = self.path / "blobs" / digest.algorithm / digest.hex
        if not target.exists():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

    def _write(self, result: Union[Image, ImageIndex]) -> dict:
        if isinstance(result, ImageIndex):
            for child, _ in result.entries:
                self._write(child)
        else:
            for digest, data in result.blobs().items():
                self._write_blob(digest, data)
        raw = result.raw_manifest()
        digest = Hash.of(raw)
        self._write_blob(digest, raw)
        return {"mediaType": result.media_type.value, "size": len(raw), "digest": str(digest)}

    def _append(self, result: Union[Image, ImageIndex]) -> None:
        descriptor = self._write(result)
        document = self.index()
        document["manifests"].append(descriptor)
        self._write_index(document)

    def append_image(self, image: Image) -> None:
        """Write the image's blobs and add its manifest to the layout index."""
        self._append(image)

    def append_index(self, index: ImageIndex) -> None:
        """Write the index and all its children, and add it to the layout index."""
        self._append(index)


class LayoutPublisher(Publisher):
    """Saves results into an OCI image layout."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self.layout = OCILayout(path)

    def publish(self, result: Result, ref: str) -> Reference:
        logger.info("Saving %s", ref)
        media_type = getattr(result, "media_type", None)
        if media_type in INDEX_MEDIA_TYPES:
            if not isinstance(result, ImageIndex):
                raise PublishError(f"failed to interpret result as index: {result!r}")
            self.layout.append_index(result)
        elif media_type in IMAGE_MEDIA_TYPES:
            if not isinstance(result, Image):
                raise PublishError(f"failed to interpret result as image: {result!r}")
            self.layout.append_image(result)
        else:
            text = getattr(media_type, "value", media_type)
            raise PublishError(f"result image media type: {text}")
        logger.info("Saved %s", ref)
        return parse_digest(f"{self.layout}@{result.digest()}")

    def close(self) -> None:
        return None