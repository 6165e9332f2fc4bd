from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from tuneops.models import ConfigError, DataShapeError, TargetRef

_LABEL_KEY_RE = re.compile(r"^([A-Za-z0-9.-]+/)?[A-Za-z0-9]([A-Za-z0-9._-]*[A-Za-z0-9])?$")
_SET_RE = re.compile(r"^(?P<key>\S+)\s+(?P<op>in|notin)\s+\((?P<values>[^)]*)\)$")


class Resource:
    """One structured document identified by its target reference."""

    def __init__(self, document: Mapping[str, Any]):
        if not isinstance(document, Mapping):
            raise DataShapeError("resource document must be a mapping")
        self.document = document
        metadata = document.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise DataShapeError("resource metadata must be a mapping")
        self.metadata = metadata
        self.api_version = str(document.get("apiVersion", "") or "")
        self.kind = str(document.get("kind", "") or "")
        self.name = str(metadata.get("name", "") or "")
        self.namespace = str(metadata.get("namespace", "") or "")
        if not self.kind or not self.name:
            raise DataShapeError(
                "resource documents require 'kind' and 'metadata.name' "
                f"(got kind={self.kind!r}, name={self.name!r})"
            )

    @property
    def group(self) -> str:
        if "/" not in self.api_version:
            return ""
        return self.api_version.split("/", 1)[0]

    @property
    def version(self) -> str:
        return self.api_version.rsplit("/", 1)[-1]

    @property
    def labels(self) -> dict[str, str]:
        raw = self.metadata.get("labels") or {}
        return {str(k): str(v) for k, v in raw.items()}

    @property
    def target_ref(self) -> TargetRef:
        return TargetRef(
            api_version=self.api_version,
            kind=self.kind,
            name=self.name,
            namespace=self.namespace,
        )

    def __repr__(self) -> str:
        return f"Resource({self.target_ref})"


def as_resources(documents: Iterable[Mapping[str, Any] | Resource]) -> list[Resource]:
    return [doc if isinstance(doc, Resource) else Resource(doc) for doc in documents]


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str  # = | != | in | notin | exists | !exists
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        if self.operator == "exists":
            return present
        if self.operator == "!exists":
            return not present
        if self.operator in {"=", "in"}:
            return present and labels[self.key] in self.values
        # != and notin also match when the label is absent
        return not present or labels[self.key] not in self.values


def _check_key(key: str, *, selector: str) -> str:
    if not _LABEL_KEY_RE.match(key):
        raise ConfigError(f"label selector '{selector}' has invalid key '{key}'")
    return key


def _split_terms(selector: str) -> list[str]:
    terms: list[str] = []
    depth = 0
    current: list[str] = []
    for char in selector:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ConfigError(f"label selector '{selector}' has unbalanced ')'")
        if char == "," and depth == 0:
            terms.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise ConfigError(f"label selector '{selector}' has unbalanced '('")
    terms.append("".join(current).strip())
    return terms


def parse_label_selector(selector: str | None) -> tuple[Requirement, ...]:
    """Parse a label selector such as ``app=web,tier!=db,env in (a,b),!canary``."""
    if selector is None or not selector.strip():
        return ()
    requirements: list[Requirement] = []
    for term in _split_terms(selector.strip()):
        if not term:
            raise ConfigError(f"label selector '{selector}' has an empty term")
        set_match = _SET_RE.match(term)
        if set_match:
            values = tuple(
                v.strip() for v in set_match.group("values").split(",") if v.strip()
            )
            if not values:
                raise ConfigError(f"label selector term '{term}' has no values")
            requirements.append(
                Requirement(
                    key=_check_key(set_match.group("key"), selector=selector),
                    operator=set_match.group("op"),
                    values=values,
                )
            )
            continue
        if "!=" in term:
            key, value = term.split("!=", 1)
            requirements.append(
                Requirement(
                    key=_check_key(key.strip(), selector=selector),
                    operator="!=",
                    values=(value.strip(),),
                )
            )
            continue
        if "=" in term:
            key, value = term.split("==", 1) if "==" in term else term.split("=", 1)
            requirements.append(
                Requirement(
                    key=_check_key(key.strip(), selector=selector),
                    operator="=",
                    values=(value.strip(),),
                )
            )
            continue
        if term.startswith("!"):
            requirements.append(
                Requirement(
                    key=_check_key(term[1:].strip(), selector=selector),
                    operator="!exists",
                )
            )
            continue
        requirements.append(
            Requirement(key=_check_key(term, selector=selector), operator="exists")
        )
    return tuple(requirements)


def format_label_selector(labels: Mapping[str, str]) -> str:
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def labels_match(requirements: Iterable[Requirement], labels: Mapping[str, str]) -> bool:
    return all(requirement.matches(labels) for requirement in requirements)
