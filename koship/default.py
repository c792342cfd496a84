"""Publishing to a container registry over the registry HTTP API."""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Iterable, Optional, Union
from urllib.parse import urljoin

import requests

from koship.image import (
    IMAGE_MEDIA_TYPES,
    INDEX_MEDIA_TYPES,
    Hash,
    Image,
    ImageIndex,
    MediaType,
)
from koship.names import (
    Reference,
    Registry,
    Repository,
    Tag,
    identity,
    parse_digest,
    parse_repository,
    parse_tag,
)
from koship.publisher import PublishError, Publisher, Result, normalize_import_path

logger = logging.getLogger(__name__)

Namer = Callable[[str, str], str]
Keychain = Callable[[Registry], Any]

# Some registries cannot push by digest alone, so "latest" is the default tag.
DEFAULT_TAGS: tuple[str, ...] = ("latest",)

_MANIFEST_ACCEPT = ", ".join(
    media_type.value
    for media_type in (
        MediaType.OCI_IMAGE_INDEX,
        MediaType.DOCKER_MANIFEST_LIST,
        MediaType.OCI_MANIFEST_SCHEMA1,
        MediaType.DOCKER_MANIFEST_SCHEMA2,
    )
)
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def _media_type_text(media_type: Any) -> str:
    return getattr(media_type, "value", str(media_type))


def _check(response: requests.Response, expected: Iterable[int], action: str) -> None:
    if response.status_code not in expected:
        raise PublishError(
            f"{action}: unexpected status {response.status_code}: {response.text[:200]}"
        )


class RegistryClient:
    """A minimal client for pushing images and indexes to a registry."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        user_agent: str = "ko",
        auth: Any = None,
        insecure: bool = False,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        self._user_agent = user_agent
        self._auth = auth
        self._verify = not insecure
        self._credentials: dict[tuple[str, str], tuple[dict[str, str], Any]] = {}

    @staticmethod
    def _base_url(repository: Repository) -> str:
        registry = repository.registry
        return f"{registry.scheme}://{registry.name}"

    def _repo_url(self, repository: Repository) -> str:
        return f"{self._base_url(repository)}/v2/{repository.path}"

    def _authorize(self, repository: Repository) -> tuple[dict[str, str], Any]:
        key = (repository.registry.name, repository.path)
        cached = self._credentials.get(key)
        if cached is not None:
            return cached
        ping_url = f"{self._base_url(repository)}/v2/"
        ping = self._session.get(
            ping_url, headers={"User-Agent": self._user_agent}, verify=self._verify
        )
        if ping.status_code == 401:
            credentials = self._answer_challenge(
                ping.headers.get("WWW-Authenticate", ""), repository
            )
        elif ping.status_code == 200:
            credentials = ({}, None)
        else:
            raise PublishError(f"unexpected status pinging {ping_url}: {ping.status_code}")
        self._credentials[key] = credentials
        return credentials

    def _answer_challenge(
        self, header: str, repository: Repository
    ) -> tuple[dict[str, str], Any]:
        scheme, _, rest = header.strip().partition(" ")
        scheme = scheme.lower()
        if scheme == "basic":
            return {}, self._auth
        if scheme != "bearer":
            raise PublishError(f"unsupported authentication challenge: {header!r}")
        params = dict(_CHALLENGE_PARAM.findall(rest))
        realm = params.get("realm")
        if not realm:
            raise PublishError(f"bearer challenge without realm: {header!r}")
        query = {"scope": f"repository:{repository.path}:push,pull"}
        if "service" in params:
            query["service"] = params["service"]
        response = self._session.get(
            realm,
            params=query,
            auth=self._auth,
            headers={"User-Agent": self._user_agent},
            verify=self._verify,
        )
        _check(response, (200,), f"token exchange with {realm}")
        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise PublishError(f"token exchange with {realm} returned no token")
        return {"Authorization": f"Bearer {token}"}, None

    def _request(
        self, method: str, repository: Repository, url: str, **kwargs: Any
    ) -> requests.Response:
        auth_headers, auth = self._authorize(repository)
        headers = {
            **auth_headers,
            "User-Agent": self._user_agent,
            **kwargs.pop("headers", {}),
        }
        return self._session.request(
            method, url, headers=headers, auth=auth, verify=self._verify, **kwargs
        )

    def _push_blob(self, repository: Repository, digest: Hash, data: bytes) -> None:
        repo_url = self._repo_url(repository)
        head = self._request("HEAD", repository, f"{repo_url}/blobs/{digest}")
        if head.status_code == 200:
            return
        uploads_url = f"{repo_url}/blobs/uploads/"
        start = self._request("POST", repository, uploads_url)
        if start.status_code == 201:
            # The registry already had (or mounted) the blob.
            return
        _check(start, (202,), f"starting upload of {digest}")
        location = start.headers.get("Location")
        if not location:
            raise PublishError(f"upload of {digest} started without a Location")
        done = self._request(
            "PUT",
            repository,
            urljoin(uploads_url, location),
            params={"digest": str(digest)},
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        _check(done, (201,), f"uploading {digest}")

    def _put_manifest(
        self, repository: Repository, reference: str, raw: bytes, media_type: Any
    ) -> None:
        response = self._request(
            "PUT",
            repository,
            f"{self._repo_url(repository)}/manifests/{reference}",
            data=raw,
            headers={"Content-Type": _media_type_text(media_type)},
        )
        _check(response, (200, 201, 202), f"putting manifest {repository}:{reference}")

    def _write_image(self, repository: Repository, reference: str, image: Image) -> None:
        for digest, data in image.blobs().items():
            self._push_blob(repository, digest, data)
        self._put_manifest(repository, reference, image.raw_manifest(), image.media_type)

    def _write_index(
        self, repository: Repository, reference: str, index: ImageIndex
    ) -> None:
        for child, _ in index.entries:
            child_reference = str(child.digest())
            if isinstance(child, ImageIndex):
                self._write_index(repository, child_reference, child)
            else:
                self._write_image(repository, child_reference, child)
        self._put_manifest(repository, reference, index.raw_manifest(), index.media_type)

    def write_image(self, tag: Tag, image: Image) -> None:
        """Push the image's blobs and its manifest under ``tag``."""
        self._write_image(tag.repository, tag.tag, image)

    def write_index(self, tag: Tag, index: ImageIndex) -> None:
        """Push every child of the index, then the index manifest under ``tag``."""
        self._write_index(tag.repository, tag.tag, index)

    def tag(self, tag: Tag, result: Result) -> None:
        """Point ``tag`` at an already pushed image or index."""
        self._put_manifest(tag.repository, tag.tag, result.raw_manifest(), result.media_type)

    def get_digest(self, tag: Tag) -> Hash:
        """Return the digest of the manifest that ``tag`` points at."""
        url = f"{self._repo_url(tag.repository)}/manifests/{tag.tag}"
        headers = {"Accept": _MANIFEST_ACCEPT}
        head = self._request("HEAD", tag.repository, url, headers=headers)
        _check(head, (200,), f"resolving {tag}")
        header = head.headers.get("Docker-Content-Digest")
        if header:
            return Hash.parse(header)
        response = self._request("GET", tag.repository, url, headers=headers)
        _check(response, (200,), f"fetching {tag}")
        return Hash.of(response.content)


class DefaultPublisher(Publisher):
    """Publishes results under a base repository in a registry."""

    def __init__(
        self,
        base: str,
        client: Optional[RegistryClient] = None,
        namer: Namer = identity,
        tags: Iterable[str] = DEFAULT_TAGS,
        tag_only: bool = False,
        insecure: bool = False,
    ) -> None:
        tags = tuple(tags)
        if tag_only:
            if len(tags) != 1:
                raise ValueError(
                    "must specify exactly one tag to resolve images into tag-only references"
                )
            if tags[0] == DEFAULT_TAGS[0]:
                raise ValueError("latest tag cannot be used in tag-only references")
        self._base = base
        self._client = client if client is not None else RegistryClient(insecure=insecure)
        self._namer = namer
        self._tags = tags
        self._tag_only = tag_only
        self._insecure = insecure

    def _push_result(self, tag: Tag, result: Result) -> None:
        media_type = getattr(result, "media_type", None)
        if media_type in INDEX_MEDIA_TYPES:
            if not isinstance(result, ImageIndex):
                raise PublishError(f"failed to interpret result as index: {result!r}")
            self._client.write_index(tag, result)
        elif media_type in IMAGE_MEDIA_TYPES:
            if not isinstance(result, Image):
                raise PublishError(f"failed to interpret result as image: {result!r}")
            self._client.write_image(tag, result)
        else:
            raise PublishError(f"result image media type: {_media_type_text(media_type)}")

    def publish(self, result: Result, ref: str) -> Reference:
        path = normalize_import_path(ref)
        name = self._namer(self._base, path)

        for position, tag_name in enumerate(self._tags):
            tag = parse_tag(f"{name}:{tag_name}", self._insecure)
            if position == 0:
                logger.info("Publishing %s", tag)
                self._push_result(tag, result)
            else:
                logger.info("Tagging %s", tag)
                self._client.tag(tag, result)

        if self._tag_only:
            return parse_tag(f"{name}:{self._tags[0]}")

        digest = result.digest()
        reference = f"{name}@{digest}"
        if len(self._tags) == 1 and self._tags[0] != DEFAULT_TAGS[0]:
            # A single explicit tag is probably a release: keep it in the reference.
            reference = f"{name}:{self._tags[0]}@{digest}"
        published = parse_digest(reference)
        logger.info("Published %s", published)
        return published

    def close(self) -> None:
        return None


def new_default(
    base: str,
    session: Optional[requests.Session] = None,
    user_agent: str = "ko",
    auth: Any = None,
    keychain: Optional[Keychain] = None,
    namer: Namer = identity,
    tags: Union[Iterable[str], None] = None,
    tag_only: bool = False,
    insecure: bool = False,
) -> DefaultPublisher:
    """Create a publisher for ``base``; ``keychain`` overrides ``auth`` when given."""
    if keychain is not None:
        # A fake path is appended so the registry part of the base parses cleanly.
        registry = parse_repository(identity(base, "ko")).registry
        auth = keychain(registry)
        if auth is None:
            logger.info("No matching credentials were found, falling back on anonymous")
    client = RegistryClient(session, user_agent, auth, insecure)
    return DefaultPublisher(
        base,
        client,
        namer,
        DEFAULT_TAGS if tags is None else tags,
        tag_only,
        insecure,
    )