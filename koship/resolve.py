"""Resolving ``ko://`` references in Kubernetes YAML to published image digests."""

from __future__ import annotations

import io
from collections.abc import Mapping, MutableMapping, MutableSequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Iterator, Protocol

from ruamel.yaml import YAML

from koship.publisher import STRICT_SCHEME, Publisher, Result


class ResolveError(Exception):
    """Raised when a strict reference cannot be resolved."""


class _Builder(Protocol):
    def is_supported_reference(self, ref: str) -> None: ...

    def build(self, ref: str) -> Result: ...


def _yaml() -> YAML:
    yaml = YAML(typ="rt")
    yaml.preserve_quotes = True
    return yaml


def load_documents(text: str) -> list[Any]:
    """Load every document of a YAML stream, keeping comments and styles."""
    return list(_yaml().load_all(text))


def dump_document(doc: Any) -> str:
    """Serialize one document back to YAML text."""
    stream = io.StringIO()
    _yaml().dump(doc, stream)
    return stream.getvalue()


def _walk(node: Any) -> Iterator[str]:
    if isinstance(node, str):
        yield node
    elif isinstance(node, Mapping):
        for key, value in node.items():
            yield from _walk(key)
            yield from _walk(value)
    elif isinstance(node, (list, tuple)):
        for item in node:
            yield from _walk(item)


def iter_strict_references(doc: Any) -> Iterator[str]:
    """Yield every string key or value in ``doc`` that starts with the strict scheme."""
    return (value for value in _walk(doc) if value.startswith(STRICT_SCHEME))


def _rewrite(node: Any, digests: Mapping[str, str]) -> Any:
    """Return ``node`` with strict references replaced; containers change in place."""
    if isinstance(node, str):
        if node.startswith(STRICT_SCHEME):
            return digests.get(node.strip(), node)
        return node
    if isinstance(node, MutableMapping):
        _rewrite_mapping(node, digests)
    elif isinstance(node, MutableSequence):
        for position, item in enumerate(node):
            replacement = _rewrite(item, digests)
            if replacement is not item:
                node[position] = replacement
    return node


def _rewrite_mapping(mapping: MutableMapping, digests: Mapping[str, str]) -> None:
    original = list(mapping.items())
    entries = [(_rewrite(key, digests), _rewrite(value, digests)) for key, value in original]
    keys_changed = any(new is not old for (new, _), (old, _) in zip(entries, original))
    if keys_changed and not hasattr(mapping, "insert"):
        mapping.clear()
        mapping.update(entries)
        return
    for position, ((key, value), (old_key, old_value)) in enumerate(zip(entries, original)):
        if key is not old_key:
            # Keep the entry where it was rather than moving it to the end.
            del mapping[old_key]
            mapping.insert(position, key, value)
        elif value is not old_value:
            mapping[key] = value


def image_references(docs: list[Any], builder: _Builder, publisher: Publisher) -> None:
    """Build and publish every strict reference in ``docs`` and write in the digests.

    Nested values are replaced in place; documents that are themselves a
    reference are replaced in the ``docs`` list.
    """
    refs: dict[str, None] = {}
    for doc in docs:
        for value in iter_strict_references(doc):
            ref = value.strip()
            try:
                builder.is_supported_reference(ref)
            except Exception as exc:
                raise ResolveError(
                    f"found strict reference but {ref} is not a valid import path: {exc}"
                ) from exc
            refs.setdefault(ref)

    def resolve_one(ref: str) -> str:
        return str(publisher.publish(builder.build(ref), ref))

    digests: dict[str, str] = {}
    if refs:
        with ThreadPoolExecutor() as pool:
            futures = {pool.submit(resolve_one, ref): ref for ref in refs}
            for future in as_completed(futures):
                digests[futures[future]] = future.result()

    for position, doc in enumerate(docs):
        replacement = _rewrite(doc, digests)
        if replacement is not doc:
            docs[position] = replacement