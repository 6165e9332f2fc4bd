"""Collision-resistant parameter names.

Names start from a base suffix (``cpu``, ``memory``, ``replicas``). When one
resource contributes the same suffix from several fields, each name gets a
field-level discriminator (the matched element name, usually the container).
When several resources contribute the same suffix, every name of those
resources gets the resource name as the outermost prefix. The table is built
once per generation from the full field set and is order independent.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Callable, Iterable, Protocol, Sequence

from tuneops._logging import get_logger
from tuneops.fieldpath import is_filter, parse_filter
from tuneops.models import ConfigError, TargetRef
from tuneops.utils import sanitize_token

_log = get_logger("naming")

NameKey = tuple[TargetRef, tuple[str, ...], str]


class NamedField(Protocol):
    target_ref: TargetRef
    field_path: tuple[str, ...]

    @property
    def suffixes(self) -> tuple[str, ...]: ...


def _segment_token(segment: str) -> str:
    if is_filter(segment):
        return parse_filter(segment)[1]
    return segment


def field_discriminator(field_path: Sequence[str], depth: int = 0) -> str | None:
    """Name of the matched element ``depth`` filters out from the innermost one.

    With no filters at all the last path segment is used for depth 0.
    """
    filters = [parse_filter(s)[1] for s in field_path if is_filter(s)]
    if not filters:
        if depth == 0 and field_path:
            return sanitize_token(field_path[-1])
        return None
    if depth >= len(filters):
        return None
    return sanitize_token(filters[-1 - depth])


def _full_path_token(field_path: Sequence[str]) -> str:
    return sanitize_token("_".join(_segment_token(s) for s in field_path))


_RESOURCE_TOKEN_LEVELS: tuple[Callable[[TargetRef], str], ...] = (
    lambda ref: ref.name,
    lambda ref: f"{ref.kind.lower()}_{ref.name}",
    lambda ref: f"{ref.namespace}_{ref.kind.lower()}_{ref.name}",
    lambda ref: f"{ref.api_version}_{ref.namespace}_{ref.kind.lower()}_{ref.name}",
)


def _resource_tokens(refs: Iterable[TargetRef]) -> dict[TargetRef, str]:
    levels = {ref: 0 for ref in refs}
    while True:
        tokens = {
            ref: sanitize_token(_RESOURCE_TOKEN_LEVELS[level](ref))
            for ref, level in levels.items()
        }
        by_token: dict[str, list[TargetRef]] = defaultdict(list)
        for ref, token in tokens.items():
            by_token[token].append(ref)
        escalated = False
        for group in by_token.values():
            if len(group) < 2:
                continue
            for ref in group:
                if levels[ref] < len(_RESOURCE_TOKEN_LEVELS) - 1:
                    levels[ref] += 1
                    escalated = True
        if not escalated:
            return tokens


def _field_prefixes(keys: Iterable[NameKey]) -> dict[NameKey, str]:
    by_target_suffix: dict[tuple[TargetRef, str], list[NameKey]] = defaultdict(list)
    for key in keys:
        by_target_suffix[(key[0], key[2])].append(key)

    prefixes: dict[NameKey, str] = {}
    for group in by_target_suffix.values():
        if len(group) < 2:
            continue
        prefixes.update(_unique_discriminators(group))
    return prefixes


def _unique_discriminators(group: list[NameKey]) -> dict[NameKey, str]:
    # Walk outward from the innermost filter (env entry, then container).
    depth = 0
    while True:
        tokens = {key: field_discriminator(key[1], depth) for key in group}
        if any(token is None for token in tokens.values()):
            break
        if len(set(tokens.values())) == len(group):
            return {key: str(token) for key, token in tokens.items()}
        depth += 1
    return {key: _full_path_token(key[1]) for key in group}


def _colliding_targets(keys: Iterable[NameKey]) -> set[TargetRef]:
    targets_by_suffix: dict[str, set[TargetRef]] = defaultdict(set)
    for ref, _, suffix in keys:
        targets_by_suffix[suffix].add(ref)
    colliding: set[TargetRef] = set()
    for refs in targets_by_suffix.values():
        if len(refs) > 1:
            colliding.update(refs)
    return colliding


def _deduplicate(names: dict[NameKey, str]) -> dict[NameKey, str]:
    used: set[str] = set()
    out: dict[NameKey, str] = {}
    for key in sorted(names):
        name = names[key]
        if name in used:
            ordinal = 2
            while f"{name}_{ordinal}" in used or f"{name}_{ordinal}" in names.values():
                ordinal += 1
            _log.debug("Parameter name %s is ambiguous, using %s_%d", name, name, ordinal)
            name = f"{name}_{ordinal}"
        used.add(name)
        out[key] = name
    return out


def build_name_table(fields: Iterable[NamedField]) -> dict[NameKey, str]:
    keys: set[NameKey] = set()
    for f in fields:
        for suffix in f.suffixes:
            keys.add((f.target_ref, tuple(f.field_path), suffix))

    field_prefixes = _field_prefixes(keys)
    colliding = _colliding_targets(keys)
    resource_tokens = _resource_tokens(sorted(colliding))

    names: dict[NameKey, str] = {}
    for key in keys:
        parts: list[str] = []
        if key[0] in resource_tokens:
            parts.append(resource_tokens[key[0]])
        if key in field_prefixes:
            parts.append(field_prefixes[key])
        parts.append(key[2])
        names[key] = "_".join(parts)
    return _deduplicate(names)


class ParameterNamer:
    """Maps ``(target_ref, field_path, suffix)`` to a parameter name."""

    def __init__(self, table: dict[NameKey, str]):
        self._table = dict(table)

    @classmethod
    def from_fields(cls, fields: Iterable[NamedField]) -> "ParameterNamer":
        return cls(build_name_table(fields))

    def __call__(
        self, target_ref: TargetRef, field_path: Sequence[str], suffix: str
    ) -> str:
        key = (target_ref, tuple(field_path), suffix)
        try:
            return self._table[key]
        except KeyError:
            raise ConfigError(
                f"no parameter name registered for {target_ref} "
                f"field {'/'.join(field_path)} ({suffix})"
            ) from None

    def names(self) -> list[str]:
        return sorted(self._table.values())
