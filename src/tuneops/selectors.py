"""Selectors locate tunable fields inside matched resources.

A selector is immutable configuration: a group/version/kind pattern, an
optional label selector, a field path and a creation policy. Defaults are
filled in once at construction and only where the caller left a field empty.
``fields(resource)`` maps one resource to zero or more tunable fields; every
tunable field can produce both its parameter definitions and its patch
fragment.
"""

from __future__ import annotations

import re
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping, Protocol, Sequence

from tuneops._logging import get_logger
from tuneops.fieldpath import MISSING, format_path, fragment, lookup, split_path
from tuneops.models import ConfigError, DataShapeError, Parameter, TargetRef
from tuneops.naming import ParameterNamer
from tuneops.patching import PatchFragment, int_placeholder, placeholder
from tuneops.quantity import milli_value, scaled_value
from tuneops.resources import Resource, labels_match, parse_label_selector
from tuneops.utils import sanitize_token

_log = get_logger("selectors")

DEFAULT_GROUP = "apps|extensions"
DEFAULT_KIND = "Deployment|StatefulSet"
CONTAINERS_PATH = "/spec/template/spec/containers"

CPU_BOUNDS = (100, 4000)
MEMORY_BOUNDS = (128, 4096)
RESOURCE_SECTIONS = ("limits", "requests")


class TunableField(Protocol):
    """A located field that is both a parameter source and a patch source."""

    target_ref: TargetRef
    field_path: tuple[str, ...]

    @property
    def suffixes(self) -> tuple[str, ...]: ...

    @property
    def tunable(self) -> bool: ...

    def parameters(self, namer: ParameterNamer) -> list[Parameter]: ...

    def patch(self, namer: ParameterNamer) -> PatchFragment: ...


def _where(target_ref: TargetRef, field_path: Sequence[str]) -> str:
    return f"{target_ref} {format_path(field_path)}"


def _widen(bounds: tuple[int, int], baseline: int | None) -> tuple[int, int]:
    low, high = bounds
    if baseline is None:
        return low, high
    return min(low, baseline), max(high, baseline)


@dataclass(frozen=True)
class ReplicaField:
    target_ref: TargetRef
    field_path: tuple[str, ...]
    value: Any

    suffixes: ClassVar[tuple[str, ...]] = ("replicas",)

    def count(self) -> int:
        if self.value is None:
            return 0
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise DataShapeError(
                f"{_where(self.target_ref, self.field_path)}: replicas must be an "
                f"integer, got {self.value!r}"
            )
        return self.value

    @property
    def tunable(self) -> bool:
        # Non-positive counts are treated as not configured yet.
        return self.count() > 0

    def parameters(self, namer: ParameterNamer) -> list[Parameter]:
        v = self.count()
        if v <= 0:
            return []
        return [
            Parameter(
                name=namer(self.target_ref, self.field_path, "replicas"),
                min=1,
                max=max(5, v),
                baseline=v,
            )
        ]

    def patch(self, namer: ParameterNamer) -> PatchFragment:
        name = namer(self.target_ref, self.field_path, "replicas")
        return PatchFragment(
            target_ref=self.target_ref,
            data=fragment(self.field_path, int_placeholder(name)),
        )


@dataclass(frozen=True)
class ContainerResourcesField:
    target_ref: TargetRef
    field_path: tuple[str, ...]
    value: Any

    suffixes: ClassVar[tuple[str, ...]] = ("cpu", "memory")

    @property
    def tunable(self) -> bool:
        return True

    def _observed(self, resource_name: str) -> tuple[str | None, Any]:
        """Return the section and value the baseline of ``resource_name`` comes from."""
        resources = self.value if self.value is not None else {}
        if not isinstance(resources, Mapping):
            raise DataShapeError(
                f"{_where(self.target_ref, self.field_path)}: resources must be a mapping"
            )
        for section in RESOURCE_SECTIONS:
            values = resources.get(section) or {}
            if not isinstance(values, Mapping):
                raise DataShapeError(
                    f"{_where(self.target_ref, self.field_path)}: {section} must be a mapping"
                )
            if values.get(resource_name) is not None:
                return section, values[resource_name]
        return None, None

    def baselines(self) -> tuple[int | None, int | None]:
        _, cpu = self._observed("cpu")
        _, memory = self._observed("memory")
        try:
            return (
                None if cpu is None else milli_value(cpu),
                None if memory is None else scaled_value(memory, "Mi"),
            )
        except DataShapeError as exc:
            raise DataShapeError(
                f"{_where(self.target_ref, self.field_path)}: {exc}"
            ) from exc

    def parameters(self, namer: ParameterNamer) -> list[Parameter]:
        cpu, memory = self.baselines()
        cpu_min, cpu_max = _widen(CPU_BOUNDS, cpu)
        memory_min, memory_max = _widen(MEMORY_BOUNDS, memory)
        return [
            Parameter(
                name=namer(self.target_ref, self.field_path, "cpu"),
                min=cpu_min,
                max=cpu_max,
                baseline=cpu,
            ),
            Parameter(
                name=namer(self.target_ref, self.field_path, "memory"),
                min=memory_min,
                max=memory_max,
                baseline=memory,
            ),
        ]

    def patch(self, namer: ParameterNamer) -> PatchFragment:
        units = {"cpu": "m", "memory": "Mi"}
        sections: dict[str, dict[str, str]] = {}
        for resource_name, unit in units.items():
            value = placeholder(namer(self.target_ref, self.field_path, resource_name)) + unit
            # Only the section holding the baseline is rewritten.
            source, _ = self._observed(resource_name)
            for section in (source,) if source else RESOURCE_SECTIONS:
                sections.setdefault(section, {})[resource_name] = value
        return PatchFragment(
            target_ref=self.target_ref,
            data=fragment(
                self.field_path,
                {s: sections[s] for s in RESOURCE_SECTIONS if s in sections},
            ),
        )


@dataclass(frozen=True)
class EnvVarField:
    target_ref: TargetRef
    field_path: tuple[str, ...]
    variable: str
    value: str | None
    values: tuple[str, ...]

    @property
    def suffixes(self) -> tuple[str, ...]:
        return (sanitize_token(self.variable).lower(),)

    @property
    def tunable(self) -> bool:
        return True

    def parameters(self, namer: ParameterNamer) -> list[Parameter]:
        values = list(self.values)
        if self.value is not None and self.value not in values:
            values.append(self.value)
        return [
            Parameter(
                name=namer(self.target_ref, self.field_path, self.suffixes[0]),
                values=tuple(values),
                baseline=self.value,
            )
        ]

    def patch(self, namer: ParameterNamer) -> PatchFragment:
        name = namer(self.target_ref, self.field_path, self.suffixes[0])
        return PatchFragment(
            target_ref=self.target_ref,
            data=fragment(self.field_path, placeholder(name)),
        )


def _compile(pattern: str, *, label: str) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"{label} pattern '{pattern}' is invalid: {exc}") from exc


@dataclass(frozen=True)
class GenericSelector:
    """Matches resources by group/version/kind/namespace/name patterns and labels."""

    group: str = ""
    version: str = ""
    kind: str = ""
    namespace: str = ""
    name: str = ""
    label_selector: str = ""

    selector_type: ClassVar[str] = ""

    def __post_init__(self) -> None:
        for label in ("group", "version", "kind", "namespace", "name"):
            _compile(getattr(self, label), label=label)
        parse_label_selector(self.label_selector)

    def _default(self, **values: Any) -> None:
        for key, value in values.items():
            object.__setattr__(self, key, value)

    def matches(self, resource: Resource) -> bool:
        checks = (
            ("group", resource.group),
            ("version", resource.version),
            ("kind", resource.kind),
            ("namespace", resource.namespace),
            ("name", resource.name),
        )
        for label, actual in checks:
            pattern = _compile(getattr(self, label), label=label)
            if pattern is not None and pattern.fullmatch(actual) is None:
                return False
        return labels_match(parse_label_selector(self.label_selector), resource.labels)

    def fields(self, resource: Resource) -> list[TunableField]:
        return []


@dataclass(frozen=True)
class ReplicaSelector(GenericSelector):
    path: str = ""
    create: bool = False

    selector_type: ClassVar[str] = "replicas"

    def __post_init__(self) -> None:
        if not self.kind:
            self._default(group=DEFAULT_GROUP, kind=DEFAULT_KIND)
        if not self.path:
            self._default(path="/spec/replicas")
        split_path(self.path)
        super().__post_init__()

    def fields(self, resource: Resource) -> list[TunableField]:
        tree = deepcopy(resource.document) if self.create else resource.document
        value = lookup(tree, self.path, create=self.create)
        if value is MISSING:
            _log.debug("No replica field at %s", _where(resource.target_ref, split_path(self.path)))
            return []
        return [
            ReplicaField(
                target_ref=resource.target_ref,
                field_path=split_path(self.path),
                value=value,
            )
        ]


def _containers(tree: Any, path: str, where: TargetRef) -> list[Mapping[str, Any]]:
    containers = lookup(tree, path)
    if containers is MISSING:
        return []
    if not isinstance(containers, list):
        raise DataShapeError(f"{_where(where, split_path(path))}: expected a list")
    named = []
    for container in containers:
        if isinstance(container, Mapping) and container.get("name"):
            named.append(container)
        else:
            _log.debug("Skipping unnamed container in %s", where)
    return named


@dataclass(frozen=True)
class ContainerResourcesSelector(GenericSelector):
    path: str = ""
    create: bool = False

    selector_type: ClassVar[str] = "containerResources"

    def __post_init__(self) -> None:
        if not self.kind:
            self._default(group=DEFAULT_GROUP, kind=DEFAULT_KIND)
        if not self.path:
            self._default(path=CONTAINERS_PATH)
        split_path(self.path)
        super().__post_init__()

    def fields(self, resource: Resource) -> list[TunableField]:
        result: list[TunableField] = []
        base = split_path(self.path)
        for container in _containers(resource.document, self.path, resource.target_ref):
            field_path = base + (f"[name={container['name']}]", "resources")
            value = container.get("resources")
            if value is None and not self.create:
                _log.debug("No resources at %s", _where(resource.target_ref, field_path))
                continue
            result.append(
                ContainerResourcesField(
                    target_ref=resource.target_ref,
                    field_path=field_path,
                    value=deepcopy(value),
                )
            )
        return result


@dataclass(frozen=True)
class EnvVarSelector(GenericSelector):
    path: str = ""
    create: bool = False
    variable: str = ""
    values: tuple[str, ...] = ()

    selector_type: ClassVar[str] = "envVar"

    def __post_init__(self) -> None:
        if not self.kind:
            self._default(group=DEFAULT_GROUP, kind=DEFAULT_KIND)
        if not self.path:
            self._default(path=CONTAINERS_PATH)
        if not self.variable:
            raise ConfigError("envVar selector requires a variable name")
        if not self.values:
            raise ConfigError(
                f"envVar selector for '{self.variable}' requires a non-empty value set"
            )
        self._default(values=tuple(str(v) for v in self.values))
        split_path(self.path)
        super().__post_init__()

    def fields(self, resource: Resource) -> list[TunableField]:
        result: list[TunableField] = []
        base = split_path(self.path)
        for container in _containers(resource.document, self.path, resource.target_ref):
            field_path = base + (
                f"[name={container['name']}]",
                "env",
                f"[name={self.variable}]",
                "value",
            )
            entry = _env_entry(container, self.variable)
            if entry is None:
                if not self.create:
                    continue
                observed = None
            elif "value" not in entry:
                # valueFrom and similar indirections cannot be tuned.
                _log.debug("Env var %s is not a literal at %s", self.variable, resource.target_ref)
                continue
            else:
                observed = None if entry["value"] is None else str(entry["value"])
            result.append(
                EnvVarField(
                    target_ref=resource.target_ref,
                    field_path=field_path,
                    variable=self.variable,
                    value=observed,
                    values=self.values,
                )
            )
        return result


def _env_entry(container: Mapping[str, Any], variable: str) -> Mapping[str, Any] | None:
    env = container.get("env") or []
    if not isinstance(env, list):
        raise DataShapeError(f"container '{container.get('name')}' env must be a list")
    for entry in env:
        if isinstance(entry, Mapping) and entry.get("name") == variable:
            return entry
    return None


SELECTOR_TYPES: dict[str, type[GenericSelector]] = {
    cls.selector_type: cls
    for cls in (ReplicaSelector, ContainerResourcesSelector, EnvVarSelector)
}


def default_selectors() -> list[GenericSelector]:
    return [ReplicaSelector(), ContainerResourcesSelector()]
