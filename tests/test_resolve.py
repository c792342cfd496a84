import threading

import pytest

from koship.image import Hash, random_index
from koship.names import parse_digest
from koship.publisher import STRICT_SCHEME, PublishError, Publisher
from koship.resolve import (
    ResolveError,
    dump_document,
    image_references,
    iter_strict_references,
    load_documents,
)

FOO_REF = "github.com/awesomesauce/foo"
BAR_REF = "github.com/awesomesauce/bar"
BAZ_REF = "github.com/awesomesauce/baz"

RESULTS = {ref: random_index(1024, 5, 1) for ref in (FOO_REF, BAR_REF, BAZ_REF)}
HASHES = {ref: result.digest() for ref, result in RESULTS.items()}


class FixedBuild:
    def __init__(self, entries):
        self._entries = dict(entries or {})

    def is_supported_reference(self, ref):
        if ref.removeprefix(STRICT_SCHEME) not in self._entries:
            raise ValueError("importpath is not supported")

    def build(self, ref):
        path = ref.removeprefix(STRICT_SCHEME)
        if path not in self._entries:
            raise ValueError(f"unsupported reference: {path!r}")
        return self._entries[path]


class FixedPublish(Publisher):
    def __init__(self, base, entries):
        self._base = base
        self._entries = dict(entries)
        self.calls = []
        self._lock = threading.Lock()

    def publish(self, result, ref):
        path = ref.removeprefix(STRICT_SCHEME)
        with self._lock:
            self.calls.append(path)
        if path not in self._entries:
            raise PublishError(f"unsupported importpath: {path!r}")
        return parse_digest(f"{self._base}/{path}@{self._entries[path]}")

    def close(self):
        return None


BUILDER = FixedBuild(RESULTS)


def compute_digest(base, ref):
    return f"{base}/{ref}@{HASHES[ref]}"


def test_fixed_publish():
    hex1 = "deadbeef" * 8
    hex2 = "baadf00d" * 8
    publisher = FixedPublish(
        "gcr.io/asdf", {"foo": Hash("sha256", hex1), "bar": Hash("sha256", hex2)}
    )
    assert str(publisher.publish(None, "foo")) == "gcr.io/asdf/foo@sha256:" + hex1
    assert str(publisher.publish(None, "bar")) == "gcr.io/asdf/bar@sha256:" + hex2
    with pytest.raises(PublishError):
        publisher.publish(None, "baz")


@pytest.mark.parametrize(
    "refs, base",
    [
        ([FOO_REF], "gcr.io/mattmoor"),
        ([FOO_REF], "gcr.io/jasonhall"),
        ([FOO_REF, BAR_REF], "gcr.io/jonjohnson"),
        ([], "gcr.io/blah"),
    ],
    ids=["singleton array", "singleton array (different base)", "two element array", "empty array"],
)
def test_yaml_arrays(refs, base):
    text = dump_document([STRICT_SCHEME + ref for ref in refs])
    docs = load_documents(text)
    image_references(docs, BUILDER, FixedPublish(base, HASHES))
    assert list(docs[0]) == [compute_digest(base, ref) for ref in refs]


MAP_BASE = "gcr.io/mattmoor"


@pytest.mark.parametrize(
    "given, expected",
    [
        (
            {"image": STRICT_SCHEME + FOO_REF},
            {"image": compute_digest(MAP_BASE, FOO_REF)},
        ),
        (
            {STRICT_SCHEME + BAZ_REF: "blah"},
            {compute_digest(MAP_BASE, BAZ_REF): "blah"},
        ),
        (
            {STRICT_SCHEME + FOO_REF: STRICT_SCHEME + BAR_REF},
            {compute_digest(MAP_BASE, FOO_REF): compute_digest(MAP_BASE, BAR_REF)},
        ),
        ({}, {}),
        (
            {"arg1": STRICT_SCHEME + FOO_REF, "arg2": STRICT_SCHEME + BAR_REF},
            {
                "arg1": compute_digest(MAP_BASE, FOO_REF),
                "arg2": compute_digest(MAP_BASE, BAR_REF),
            },
        ),
    ],
    ids=["simple value", "simple key", "key and value", "empty map", "multiple values"],
)
def test_yaml_maps(given, expected):
    docs = load_documents(dump_document(given))
    image_references(docs, BUILDER, FixedPublish(MAP_BASE, HASHES))
    assert dict(docs[0]) == expected


OBJECT_BASE = "gcr.io/bazinga"
FOO_STRICT = STRICT_SCHEME + FOO_REF
FOO_DIGEST = compute_digest(OBJECT_BASE, FOO_REF)


@pytest.mark.parametrize(
    "given, expected",
    [
        ({"s": ""}, {"s": ""}),
        ({"s": FOO_STRICT}, {"s": FOO_DIGEST}),
        ({"m": {"blah": {"s": FOO_STRICT}}}, {"m": {"blah": {"s": FOO_DIGEST}}}),
        ({"a": [{"s": FOO_STRICT}]}, {"a": [{"s": FOO_DIGEST}]}),
        ({"p": {"s": FOO_STRICT}}, {"p": {"s": FOO_DIGEST}}),
        (
            {"m": {"blah": {"a": [{"p": {"s": FOO_STRICT}}]}}},
            {"m": {"blah": {"a": [{"p": {"s": FOO_DIGEST}}]}}},
        ),
    ],
    ids=["empty object", "string field", "map field", "array field", "pointer field", "deep field"],
)
def test_yaml_object(given, expected):
    docs = load_documents(dump_document(given))
    image_references(docs, BUILDER, FixedPublish(OBJECT_BASE, HASHES))
    assert docs[0] == expected


def test_strict_documents():
    base = "gcr.io/multi-pass"
    docs = load_documents(f"{STRICT_SCHEME}{FOO_REF}\n---\n{STRICT_SCHEME}{BAR_REF}\n")
    image_references(docs, BUILDER, FixedPublish(base, HASHES))
    assert docs == [compute_digest(base, FOO_REF), compute_digest(base, BAR_REF)]


def test_unsupported_reference_error():
    docs = load_documents(f"{STRICT_SCHEME}{FOO_REF}\n")
    with pytest.raises(ResolveError):
        image_references(docs, FixedBuild(None), FixedPublish("gcr.io/multi-pass", HASHES))
    assert docs == [STRICT_SCHEME + FOO_REF]


def test_publish_error_propagates():
    docs = load_documents(f"image: {STRICT_SCHEME}{BAZ_REF}\n")
    publisher = FixedPublish("gcr.io/x", {FOO_REF: HASHES[FOO_REF]})
    with pytest.raises(PublishError):
        image_references(docs, BUILDER, publisher)


def test_repeated_reference_published_once():
    base = "gcr.io/once"
    docs = load_documents(
        f"a: {STRICT_SCHEME}{FOO_REF}\nb:\n- {STRICT_SCHEME}{FOO_REF}\n"
        f"---\nc: {STRICT_SCHEME}{FOO_REF}\n"
    )
    publisher = FixedPublish(base, HASHES)
    image_references(docs, BUILDER, publisher)
    expected = compute_digest(base, FOO_REF)
    assert publisher.calls == [FOO_REF]
    assert docs[0]["a"] == expected
    assert list(docs[0]["b"]) == [expected]
    assert docs[1]["c"] == expected


def test_replaced_key_keeps_position():
    base = "gcr.io/order"
    docs = load_documents(f"a: 1\n{STRICT_SCHEME}{FOO_REF}: 2\nc: 3\n")
    image_references(docs, BUILDER, FixedPublish(base, HASHES))
    assert list(docs[0].keys()) == ["a", compute_digest(base, FOO_REF), "c"]
    assert docs[0][compute_digest(base, FOO_REF)] == 2


def test_iter_strict_references():
    doc = load_documents("image: ko://a\nko://b: x\nlist:\n- ko://c\n- plain\n- 3\n")[0]
    assert list(iter_strict_references(doc)) == ["ko://a", "ko://b", "ko://c"]


def test_load_and_dump_round_trip():
    text = "a: 1\n# a comment\nb:\n- x\n- y\n"
    docs = load_documents(text + "---\nc: 2\n")
    assert len(docs) == 2
    assert dump_document(docs[0]) == text
    assert docs[1] == {"c": 2}