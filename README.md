# koship

koship publishes container images and image indexes to several kinds of
destination. It also rewrites `ko://` image references inside Kubernetes YAML
so that they point at what was published.

## Images and names

`koship.image` models images (`Image`) and image indexes (`ImageIndex`) in the
OCI and Docker manifest formats. An image has layers and a config, and an index
holds images with optional `Platform`s. `random_image(byte_size, layers)` and
`random_index(byte_size, layers, count)` build throwaway content for testing.

`koship.names` parses references with `parse_repository`, `parse_tag`,
`parse_digest` and `parse_reference`. Each raises `NameError_` on bad input.
`identity(base, path)` is the default namer: it joins the import path under the
base repository.

## Publishers

Every publisher is a `koship.publisher.Publisher`. You call
`publish(result, ref)` with an `Image` or `ImageIndex` and an import path. A
leading `ko://` is dropped and the path is lower-cased. `publish` returns the
reference the result was published under. Call `close()` when you are done;
publishers are also context managers. Failures raise `PublishError`.

- `koship.default.DefaultPublisher` pushes to a registry over the registry
  HTTP API, using `RegistryClient`. Build one with
  `new_default(base, session=..., user_agent=..., auth=..., keychain=..., namer=..., tags=..., tag_only=..., insecure=...)`.
  - The default tag is `latest`.
  - When a single non-`latest` tag is given, the tag is kept in the returned
    digest reference.
  - `tag_only=True` returns a tag reference instead of a digest reference. It
    needs exactly one tag, and that tag must not be `latest`; otherwise a
    `ValueError` is raised.
  - The client handles basic and bearer-token challenges.
- `koship.tarball.TarballPublisher` collects images and writes them all to one
  tarball in `close()`. `write_tarball(path, refs)` and
  `iter_tarball_members(refs)` are available on their own. Indexes are
  rejected.
- `koship.layout.LayoutPublisher` appends images and indexes to an OCI image
  layout on disk, through `OCILayout`. The layout is created empty if the path
  does not hold one.
- `koship.daemon.DaemonPublisher` loads images into a Docker daemon through a
  `DockerClient`. The client connects to `DOCKER_HOST` or
  `unix:///var/run/docker.sock`. Images go under the `ko.local` domain unless
  another `local_domain` is given.
- `koship.kind.KindPublisher` imports images into the nodes of a kind cluster
  under `kind.local`. It uses a provider object that you supply: its
  `list_internal_nodes(name)` returns nodes whose `command(...)` objects
  support `set_stdin` and `run`. The cluster name comes from
  `KIND_CLUSTER_NAME` and defaults to `kind`.
- `koship.multi.MultiPublisher` publishes to several publishers in turn. The
  last one's reference wins.
- `koship.shared.CachingPublisher` shares a single publish among callers that
  ask for the same reference with the same result object. It runs on a
  `koship.future.Future`.

The daemon and kind publishers take only single images. When given an index,
they pick the image for the target platform with `select_platform_image`. The
platform comes from `GOOS`/`GOARCH`, and is `linux/amd64` when those are unset.

```python
from koship.image import random_image
from koship.names import identity
from koship.tarball import TarballPublisher

with TarballPublisher("images.tar", "example.com/blah", identity, ["v1.2.3"]) as pub:
    ref = pub.publish(random_image(1024, 1), "ko://github.com/example/app")
    print(ref)
```

## Resolving YAML

`koship.resolve.image_references(docs, builder, publisher)` finds every string
key or value that starts with `ko://` in the given documents. The builder must
provide `is_supported_reference(ref)` and `build(ref)`.

- Every reference is checked with the builder first. An unsupported one raises
  `ResolveError`.
- The references are then built and published in parallel.
- Finally the strings are replaced with the published references.

Load documents with `load_documents(text)` and write them back with
`dump_document(doc)`. Comments and quoting are kept.
`iter_strict_references(doc)` lists the references in a document.

`koship.selector.matches_selector(doc, selector)` reports whether a Kubernetes
object's labels match a selector, such as one from `parse_selector("app=web")`.

- A `List` is filtered in place to its matching items.
- `everything()` and `nothing()` give the selectors that match all objects and
  no objects.
- Documents that are not Kubernetes objects raise `SelectorError`.

## What it does not do

koship is a library only; it has no command-line tool. It does not compile or
build images itself: the builder given to `image_references` must produce
them. It ships no kind node provider and does not start any process, so
running `ctr` inside cluster nodes is up to the provider you pass in.

## Tests

```
pip install -e .[test]
pytest
```