"""Side-loading images into a local Docker daemon."""

from __future__ import annotations

import http.client
import io
import logging
import os
import socket
import tarfile
from typing import BinaryIO, Callable, Iterable, Optional
from urllib.parse import quote, urlencode, urlsplit

from koship.image import Image
from koship.names import Reference, Tag, parse_tag
from koship.publisher import PublishError, Publisher, Result, normalize_import_path, select_platform_image
from koship.tarball import iter_tarball_members

logger = logging.getLogger(__name__)

Namer = Callable[[str, str], str]

LOCAL_DOMAIN = "ko.local"
DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str, timeout: Optional[float]) -> None:
        super().__init__("localhost")
        self._socket_path = socket_path
        self._unix_timeout = timeout

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self._unix_timeout)
        sock.connect(self._socket_path)
        self.sock = sock


def _split_target(target: str) -> tuple[str, str]:
    repo, sep, tag = target.rpartition(":")
    if not sep or "/" in tag:
        return target, "latest"
    return repo, tag


class DockerClient:
    """A small client for the Docker Engine API over a unix socket or TCP."""

    def __init__(self, host: Optional[str] = None, timeout: Optional[float] = None) -> None:
        host = host or os.environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST
        self._timeout = timeout
        if host.startswith("unix://"):
            self._socket_path: Optional[str] = host[len("unix://"):]
            self._address: Optional[tuple[str, int]] = None
        elif host.startswith(("tcp://", "http://")):
            parts = urlsplit(host)
            if not parts.hostname:
                raise ValueError(f"invalid docker host: {host!r}")
            self._socket_path = None
            self._address = (parts.hostname, parts.port or 2375)
        else:
            raise ValueError(f"unsupported docker host: {host!r}")

    def _connection(self) -> http.client.HTTPConnection:
        if self._socket_path is not None:
            return _UnixHTTPConnection(self._socket_path, self._timeout)
        host, port = self._address
        return http.client.HTTPConnection(host, port, timeout=self._timeout)

    def _post(self, path: str, body: bytes = b"", headers: Optional[dict] = None) -> tuple[int, str]:
        connection = self._connection()
        try:
            connection.request("POST", path, body=body, headers=headers or {})
            response = connection.getresponse()
            text = response.read().decode("utf-8", errors="replace")
            return response.status, text
        finally:
            connection.close()

    def image_load(self, stream: BinaryIO) -> str:
        """Load a ``docker save`` tarball; return the daemon's response text."""
        status, text = self._post(
            "/images/load?" + urlencode({"quiet": "0"}),
            stream.read(),
            {"Content-Type": "application/x-tar"},
        )
        if status >= 400:
            raise PublishError(f"loading image into daemon failed ({status}): {text}")
        return text

    def image_tag(self, source: str, target: str) -> None:
        """Tag the image ``source`` as ``target``."""
        repo, tag = _split_target(target)
        path = f"/images/{quote(source, safe='')}/tag?" + urlencode({"repo": repo, "tag": tag})
        status, text = self._post(path)
        if status >= 400:
            raise PublishError(f"tagging {source} as {target} failed ({status}): {text}")


def _image_tarball(tag: Tag, image: Image) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, data in iter_tarball_members({tag: image}):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class DaemonPublisher(Publisher):
    """Loads images into a Docker daemon under a sentinel local domain."""

    def __init__(
        self,
        namer: Namer,
        tags: Iterable[str],
        local_domain: str = "",
        client: Optional[DockerClient] = None,
    ) -> None:
        self._base = local_domain or LOCAL_DOMAIN
        self._namer = namer
        self._tags = tuple(tags)
        self._client = client

    def _docker(self) -> DockerClient:
        if self._client is None:
            self._client = DockerClient()
        return self._client

    def publish(self, result: Result, ref: str) -> Reference:
        path = normalize_import_path(ref)
        # An index cannot be loaded into a daemon, so pick the target platform's image.
        image = select_platform_image(result, path)
        name = self._namer(self._base, path)
        digest_tag = parse_tag(f"{name}:{image.digest().hex}")

        client = self._docker()
        logger.info("Loading %s", digest_tag)
        response = client.image_load(io.BytesIO(_image_tarball(digest_tag, image)))
        logger.debug("daemon load response: %s", response)
        logger.info("Loaded %s", digest_tag)

        for tag_name in self._tags:
            logger.info("Adding tag %s", tag_name)
            tag = parse_tag(f"{name}:{tag_name}")
            client.image_tag(str(digest_tag), str(tag))
            logger.info("Added tag %s", tag_name)

        return digest_tag

    def close(self) -> None:
        return None