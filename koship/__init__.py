"""Publish container images to registries, tarballs, OCI layouts, a Docker daemon or kind nodes, and resolve ko:// references in Kubernetes YAML."""

__version__ = "0.1.0"