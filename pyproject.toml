[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "koship"
version = "0.1.0"
description = "Publish container images to registries, tarballs, OCI layouts, a Docker daemon or kind nodes, and resolve image references in Kubernetes YAML."
requires-python = ">=3.10"
keywords = ["containers", "oci", "registry", "kubernetes", "yaml", "kind", "images"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Software Distribution",
]
dependencies = [
    "requests",
    "ruamel-yaml",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["koship"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
