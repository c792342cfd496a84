"""Kubernetes label selectors, and matching of YAML objects and lists against them."""

from __future__ import annotations

import re
from collections.abc import Mapping, MutableSequence
from dataclasses import dataclass
from typing import Any

_NAME = re.compile(r"[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?")
_PREFIX = re.compile(r"[a-z0-9](?:[-a-z0-9]*[a-z0-9])?(?:\.[a-z0-9](?:[-a-z0-9]*[a-z0-9])?)*")

_OPERATORS = frozenset({"=", "==", "!=", "in", "notin", "exists", "!", "gt", "lt"})
_NO_VALUE = frozenset({"exists", "!"})
_SINGLE_VALUE = frozenset({"=", "==", "!=", "gt", "lt"})
_SET_OPERATORS = frozenset({"in", "notin"})
_NUMERIC = frozenset({"gt", "lt"})

_KEY_TOKEN = r"[^\s,()=!<>]+"
_VALUE_TOKEN = r"[^\s,()=!<>]*"
_NOT_EXISTS = re.compile(rf"!\s*({_KEY_TOKEN})")
_SET = re.compile(rf"({_KEY_TOKEN})\s+(in|notin)\s*\((.*)\)", re.S)
_COMPARE = re.compile(rf"({_KEY_TOKEN})\s*(==|!=|=|>|<)\s*({_VALUE_TOKEN})")
_EXISTS = re.compile(_KEY_TOKEN)
_COMPARE_OPERATORS = {"=": "=", "==": "==", "!=": "!=", ">": "gt", "<": "lt"}


class SelectorError(ValueError):
    """Raised for malformed selectors and documents that are not k8s objects."""


def _validate_key(key: str) -> None:
    prefix, sep, name = key.rpartition("/")
    if sep and (not prefix or len(prefix) > 253 or not _PREFIX.fullmatch(prefix)):
        raise SelectorError(f"invalid label key {key!r}: prefix must be a DNS subdomain")
    if len(name) > 63 or not _NAME.fullmatch(name):
        raise SelectorError(f"invalid label key {key!r}: name must be a qualified name")


def _validate_value(value: str) -> None:
    if value and (len(value) > 63 or not _NAME.fullmatch(value)):
        raise SelectorError(f"invalid label value: {value!r}")


@dataclass(frozen=True)
class Requirement:
    """One condition on a label: ``key``, an operator and its values."""

    key: str
    operator: str
    values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(self.values))
        _validate_key(self.key)
        if self.operator not in _OPERATORS:
            raise SelectorError(f"operator {self.operator!r} is not recognized")
        if self.operator in _NO_VALUE and self.values:
            raise SelectorError("values set must be empty for exists and does not exist")
        if self.operator in _SINGLE_VALUE and len(self.values) != 1:
            raise SelectorError("exact-match compatibility requires one single value")
        if self.operator in _SET_OPERATORS and not self.values:
            raise SelectorError("for 'in', 'notin' operators, values set can't be empty")
        if self.operator in _NUMERIC:
            try:
                int(self.values[0])
            except ValueError as exc:
                raise SelectorError(
                    f"for 'Gt', 'Lt' operators, the value must be an integer: {self.values[0]!r}"
                ) from exc
        else:
            for value in self.values:
                _validate_value(value)

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Whether ``labels`` satisfies this requirement."""
        present = self.key in labels
        operator = self.operator
        if operator in ("=", "==", "in"):
            return present and labels[self.key] in self.values
        if operator in ("!=", "notin"):
            return not present or labels[self.key] not in self.values
        if operator == "exists":
            return present
        if operator == "!":
            return not present
        if not present:
            return False
        try:
            actual = int(labels[self.key])
        except ValueError:
            return False
        bound = int(self.values[0])
        return actual > bound if operator == "gt" else actual < bound

    def __str__(self) -> str:
        if self.operator == "exists":
            return self.key
        if self.operator == "!":
            return f"!{self.key}"
        if self.operator in _SET_OPERATORS:
            return f"{self.key} {self.operator} ({','.join(sorted(self.values))})"
        symbol = {"gt": ">", "lt": "<"}.get(self.operator, self.operator)
        return f"{self.key}{symbol}{self.values[0]}"


@dataclass(frozen=True)
class Selector:
    """A conjunction of requirements; ``match_none`` makes it match nothing at all."""

    requirements: tuple[Requirement, ...] = ()
    match_none: bool = False

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Whether ``labels`` satisfies every requirement."""
        if self.match_none:
            return False
        return all(requirement.matches(labels) for requirement in self.requirements)

    def __str__(self) -> str:
        return ",".join(str(requirement) for requirement in self.requirements)


def everything() -> Selector:
    """A selector that matches every set of labels."""
    return Selector()


def nothing() -> Selector:
    """A selector that matches no set of labels."""
    return Selector(match_none=True)


def _split_requirements(text: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise SelectorError(f"unbalanced parentheses in selector: {text!r}")
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    if depth:
        raise SelectorError(f"unbalanced parentheses in selector: {text!r}")
    parts.append("".join(current))
    return parts


def _parse_requirement(part: str) -> Requirement:
    if not part:
        raise SelectorError("found empty requirement in selector")
    if match := _NOT_EXISTS.fullmatch(part):
        return Requirement(match[1], "!")
    if match := _SET.fullmatch(part):
        inner = match[3]
        values = tuple(value.strip() for value in inner.split(",")) if inner.strip() else ()
        return Requirement(match[1], match[2], values)
    if match := _COMPARE.fullmatch(part):
        return Requirement(match[1], _COMPARE_OPERATORS[match[2]], (match[3],))
    if _EXISTS.fullmatch(part):
        return Requirement(part, "exists")
    raise SelectorError(f"unable to parse requirement: {part!r}")


def parse_selector(text: str) -> Selector:
    """Parse a label selector such as ``app=web,tier in (a,b),!debug``."""
    if not text.strip():
        return everything()
    requirements = [_parse_requirement(part.strip()) for part in _split_requirements(text)]
    return Selector(tuple(sorted(requirements, key=lambda requirement: requirement.key)))


def _label_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _doc_kind(doc: Any) -> str:
    # Null documents carry no kind and are simply not matched.
    if doc is None:
        return ""
    if (
        not isinstance(doc, Mapping)
        or not isinstance(doc.get("apiVersion"), str)
        or not isinstance(doc.get("kind"), str)
    ):
        raise SelectorError("yaml doesn't represent a k8s object")
    return doc["kind"]


def _object_matches(doc: Any, selector: Selector) -> bool:
    if not isinstance(doc, Mapping):
        return False
    metadata = doc.get("metadata")
    if not isinstance(metadata, Mapping):
        return False
    labels = metadata.get("labels")
    if not isinstance(labels, Mapping):
        return False
    return selector.matches({str(key): _label_text(value) for key, value in labels.items()})


def _list_matches(doc: Mapping, selector: Selector) -> bool:
    items = doc.get("items")
    if not isinstance(items, MutableSequence):
        raise SelectorError("yaml is not a valid k8s list")
    for item in items:
        _doc_kind(item)
    rejected = [position for position, item in enumerate(items) if not _object_matches(item, selector)]
    for position in reversed(rejected):
        del items[position]
    return bool(items)


def matches_selector(doc: Any, selector: Selector) -> bool:
    """Whether a k8s object matches ``selector``.

    A ``List`` is filtered in place down to its matching items, and matches
    when any remain. Raises SelectorError for documents that are not k8s objects.
    """
    if _doc_kind(doc) == "List":
        return _list_matches(doc, selector)
    return _object_matches(doc, selector)