import hashlib
import io
import json
import posixpath
import tarfile

import pytest

from koship import kind
from koship.image import ImageIndex, Platform, random_image
from koship.kind import KindError, KindPublisher
from koship.names import parse_tag


class FakeCmd:
    def __init__(self, line, error):
        self.line = line
        self.error = error
        self.stdin = None
        self.consumed = b""

    def set_stdin(self, stream):
        self.stdin = stream
        return self

    def run(self):
        if self.stdin is not None:
            self.consumed = self.stdin.read()
        if self.error is not None:
            raise self.error


class FakeNode:
    def __init__(self, error=None):
        self.cmds = []
        self.error = error

    def command(self, name, *args):
        cmd = FakeCmd(" ".join((name,) + args), self.error)
        self.cmds.append(cmd)
        return cmd

    def __str__(self):
        return "test"


class FakeProvider:
    def __init__(self, nodes=()):
        self.nodes = list(nodes)
        self.requested = []

    def list_internal_nodes(self, name):
        self.requested.append(name)
        return self.nodes


def md5_hash(base, s):
    return posixpath.join(base, hashlib.md5(s.encode()).hexdigest())


def test_write():
    img = random_image(1024, 1)
    new_tag = parse_tag("kind.local/test:new")
    n1, n2 = FakeNode(), FakeNode()
    kind.write(FakeProvider([n1, n2]), new_tag, img)
    for node in (n1, n2):
        assert len(node.cmds) == 1
        assert node.cmds[0].line == "ctr --namespace=k8s.io images import -"
        with tarfile.open(fileobj=io.BytesIO(node.cmds[0].consumed)) as archive:
            manifest = json.load(archive.extractfile("manifest.json"))
        assert manifest[0]["RepoTags"] == ["kind.local/test:new"]


def test_tag():
    old_tag = parse_tag("kind.local/test:test")
    new_tag = parse_tag("kind.local/test:new")
    n1, n2 = FakeNode(), FakeNode()
    kind.tag(FakeProvider([n1, n2]), old_tag, new_tag)
    for node in (n1, n2):
        assert len(node.cmds) == 1
        assert node.cmds[0].line == (
            "ctr --namespace=k8s.io images tag --force kind.local/test:test kind.local/test:new"
        )


def test_fail_with_no_nodes():
    img = random_image(1024, 1)
    old_tag = parse_tag("kind.local/test:test")
    new_tag = parse_tag("kind.local/test:new")
    with pytest.raises(KindError, match="no nodes found"):
        kind.write(FakeProvider(), new_tag, img)
    with pytest.raises(KindError, match="no nodes found"):
        kind.tag(FakeProvider(), old_tag, new_tag)


def test_fail_commands():
    img = random_image(1024, 1)
    old_tag = parse_tag("kind.local/test:test")
    new_tag = parse_tag("kind.local/test:new")
    err_test = RuntimeError("test")
    n1, n2 = FakeNode(err_test), FakeNode(err_test)
    provider = FakeProvider([n1, n2])
    with pytest.raises(KindError) as write_info:
        kind.write(provider, new_tag, img)
    assert write_info.value.__cause__ is err_test
    assert 'node "test"' in str(write_info.value)
    assert len(n2.cmds) == 0
    with pytest.raises(KindError) as tag_info:
        kind.tag(provider, old_tag, new_tag)
    assert tag_info.value.__cause__ is err_test


def test_cluster_name_from_environment(monkeypatch):
    monkeypatch.setenv("KIND_CLUSTER_NAME", "dev")
    provider = FakeProvider([FakeNode()])
    kind.tag(provider, parse_tag("kind.local/a:b"), parse_tag("kind.local/a:c"))
    assert provider.requested == ["dev"]


def test_default_cluster_name(monkeypatch):
    monkeypatch.delenv("KIND_CLUSTER_NAME", raising=False)
    provider = FakeProvider([FakeNode()])
    kind.tag(provider, parse_tag("kind.local/a:b"), parse_tag("kind.local/a:c"))
    assert provider.requested == ["kind"]


def test_publisher_loads_and_tags():
    img = random_image(512, 1)
    node = FakeNode()
    publisher = KindPublisher(FakeProvider([node]), md5_hash, ["v1", "prod"])
    reference = publisher.publish(img, "ko://github.com/Google/ko")
    name = md5_hash("kind.local", "github.com/google/ko")
    assert str(reference) == f"{name}:{img.digest().hex}"
    lines = [cmd.line for cmd in node.cmds]
    assert lines == [
        "ctr --namespace=k8s.io images import -",
        f"ctr --namespace=k8s.io images tag --force {reference} {name}:v1",
        f"ctr --namespace=k8s.io images tag --force {reference} {name}:prod",
    ]


def test_publisher_selects_platform(monkeypatch):
    monkeypatch.setenv("GOOS", "linux")
    monkeypatch.setenv("GOARCH", "arm64")
    amd = random_image(128, 1)
    arm = random_image(128, 1)
    idx = ImageIndex(((amd, Platform("linux", "amd64")), (arm, Platform("linux", "arm64"))))
    publisher = KindPublisher(FakeProvider([FakeNode()]), md5_hash, [])
    reference = publisher.publish(idx, "example.com/app")
    assert str(reference).endswith(":" + arm.digest().hex)