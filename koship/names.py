"""Parsing of registry, repository, tag and digest references."""

from __future__ import annotations

import ipaddress
import posixpath
import re
from dataclasses import dataclass
from typing import Union

from koship.image import Hash

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

_REPOSITORY_CHARS = re.compile(r"[a-z0-9_\-./]+")
_TAG_CHARS = re.compile(r"[A-Za-z0-9_.\-]+")
_REGISTRY_CHARS = re.compile(r"(?:[A-Za-z0-9.\-]+|\[[0-9A-Fa-f:.]+\])(?::[0-9]+)?")


class NameError_(ValueError):
    """Raised when a reference cannot be parsed."""


@dataclass(frozen=True)
class Registry:
    """A registry host, optionally with a port."""

    name: str = DEFAULT_REGISTRY
    insecure: bool = False

    def __str__(self) -> str:
        return self.name

    @property
    def scheme(self) -> str:
        """The URL scheme to reach the registry with."""
        if self.insecure:
            return "http"
        host = self.name
        if host.startswith("["):
            host = host[1:].partition("]")[0]
        elif host.count(":") == 1:
            host = host.partition(":")[0]
        if host == "localhost":
            return "http"
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            return "https"
        return "http" if address.is_loopback or address.is_private else "https"


@dataclass(frozen=True)
class Repository:
    """A repository within a registry."""

    registry: Registry
    path: str

    def __str__(self) -> str:
        return f"{self.registry}/{self.path}"


@dataclass(frozen=True)
class Tag:
    """A tagged reference; prints as it was written."""

    repository: Repository
    tag: str
    original: str

    def __str__(self) -> str:
        return self.original


@dataclass(frozen=True)
class Digest:
    """A reference by content digest; prints as it was written."""

    repository: Repository
    digest: Hash
    original: str

    def __str__(self) -> str:
        return self.original


Reference = Union[Tag, Digest]


def _parse_registry(text: str, insecure: bool) -> Registry:
    if text in ("", "docker.io"):
        return Registry(DEFAULT_REGISTRY, insecure)
    if "://" in text:
        raise NameError_(f"registries must not contain a scheme: {text!r}")
    if not _REGISTRY_CHARS.fullmatch(text):
        raise NameError_(f"registries must be valid RFC 3986 URI authorities: {text!r}")
    return Registry(text, insecure)


def parse_repository(text: str, insecure: bool = False) -> Repository:
    """Parse ``[registry/]path``; the default registry is Docker Hub."""
    head, sep, rest = text.partition("/")
    if sep and ("." in head or ":" in head or head == "localhost"):
        registry = _parse_registry(head, insecure)
        path = rest
    else:
        registry = Registry(DEFAULT_REGISTRY, insecure)
        path = text
    if not 2 <= len(path) <= 255:
        raise NameError_(f"repository must be between 2 and 255 characters: {path!r}")
    if not _REPOSITORY_CHARS.fullmatch(path):
        raise NameError_(
            f"repository can only contain the characters "
            f"'abcdefghijklmnopqrstuvwxyz0123456789_-./': {path!r}"
        )
    if registry.name == DEFAULT_REGISTRY and "/" not in path:
        path = f"library/{path}"
    return Repository(registry, path)


def parse_tag(text: str, insecure: bool = False) -> Tag:
    """Parse ``repository[:tag]``; the tag defaults to ``latest``."""
    base, tag = text, ""
    head, sep, last = text.rpartition(":")
    if sep and "/" not in last:
        base, tag = head, last
    if tag:
        if len(tag) > 128 or not _TAG_CHARS.fullmatch(tag):
            raise NameError_(f"invalid tag: {tag!r}")
    else:
        tag = DEFAULT_TAG
    return Tag(parse_repository(base, insecure), tag, text)


def parse_digest(text: str, insecure: bool = False) -> Digest:
    """Parse ``repository[:tag]@algorithm:hex``."""
    parts = text.split("@")
    if len(parts) != 2:
        raise NameError_(f"a digest must contain exactly one '@' separator: {text!r}")
    base, digest_text = parts
    try:
        digest = Hash.parse(digest_text)
    except ValueError as exc:
        raise NameError_(f"invalid digest in {text!r}: {exc}") from exc
    try:
        base = str(parse_tag(base, insecure).repository)
    except NameError_:
        pass
    return Digest(parse_repository(base, insecure), digest, text)


def parse_reference(text: str, insecure: bool = False) -> Reference:
    """Parse a tag reference, or failing that a digest reference."""
    try:
        return parse_tag(text, insecure)
    except NameError_:
        pass
    try:
        return parse_digest(text, insecure)
    except NameError_ as exc:
        raise NameError_(f"could not parse reference: {text!r}") from exc


def identity(base: str, path: str) -> str:
    """The default namer: place the import path as-is under the base repository."""
    joined = "/".join(part for part in (base, path) if part)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = cleaned[1:]
    return cleaned