"""Field paths locating values inside resource trees.

A field path is written ``/spec/template/spec/containers/[name=web]/resources``
and split into ordered segments. A segment of the form ``[key=value]`` selects
the list element whose ``key`` field equals ``value``; an all-digit segment
selects a list element by position.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from tuneops.models import ConfigError, DataShapeError


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def is_filter(segment: str) -> bool:
    return segment.startswith("[") and segment.endswith("]")


def parse_filter(segment: str) -> tuple[str, str]:
    if not is_filter(segment):
        raise ConfigError(f"field path segment '{segment}' is not a filter")
    body = segment[1:-1]
    key, sep, value = body.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ConfigError(f"field path filter '{segment}' must look like [key=value]")
    return key, value.strip()


def split_path(path: str | Sequence[str]) -> tuple[str, ...]:
    """Split and validate a field path."""
    if isinstance(path, str):
        raw = path.strip()
        if not raw:
            raise ConfigError("field path must be non-empty")
        if raw.startswith("/"):
            raw = raw[1:]
        segments = tuple(raw.split("/"))
    else:
        segments = tuple(str(segment) for segment in path)
    if not segments:
        raise ConfigError("field path must be non-empty")
    for segment in segments:
        if not segment:
            raise ConfigError(f"field path '{path}' has an empty segment")
        if "[" in segment or "]" in segment:
            parse_filter(segment)
            if segment.count("[") != 1 or segment.count("]") != 1:
                raise ConfigError(f"field path segment '{segment}' is malformed")
    return segments


def format_path(segments: Sequence[str]) -> str:
    return "/" + "/".join(segments)


def _step(node: Any, segment: str, *, where: str) -> Any:
    if node is None:
        return MISSING
    if is_filter(segment):
        if not isinstance(node, list):
            raise DataShapeError(f"{where}: expected a list for '{segment}'")
        key, value = parse_filter(segment)
        for item in node:
            if isinstance(item, Mapping) and str(item.get(key, "")) == value:
                return item
        return MISSING
    if segment.isdigit() and isinstance(node, list):
        index = int(segment)
        return node[index] if index < len(node) else MISSING
    if not isinstance(node, Mapping):
        raise DataShapeError(f"{where}: expected a mapping for '{segment}'")
    return node.get(segment, MISSING)


def lookup(tree: Any, path: str | Sequence[str], *, create: bool = False) -> Any:
    """Return the value at ``path`` or ``MISSING`` when any segment is absent.

    With ``create`` the missing maps and filtered elements are synthesized in
    ``tree`` and the (empty) value found there is returned.
    """
    segments = split_path(path)
    node = tree
    for index, segment in enumerate(segments):
        node = _step(node, segment, where=format_path(segments[: index + 1]))
        if node is MISSING:
            return _synthesize(tree, segments) if create else MISSING
    return node


def _synthesize(tree: Any, segments: tuple[str, ...]) -> Any:
    if not is_filter(segments[-1]):
        set_value(tree, segments, None)
        return None
    parent_path = segments[:-1]
    parent = lookup(tree, parent_path) if parent_path else tree
    if not isinstance(parent, list):
        set_value(tree, parent_path, [])
        parent = lookup(tree, parent_path)
    key, match = parse_filter(segments[-1])
    element: dict[str, Any] = {key: match}
    parent.append(element)
    return element


def set_value(tree: dict[str, Any], path: str | Sequence[str], value: Any) -> None:
    """Set ``value`` at ``path``, synthesizing missing maps and filtered elements."""
    segments = split_path(path)
    node: Any = tree
    for index, segment in enumerate(segments):
        last = index == len(segments) - 1
        where = format_path(segments[: index + 1])
        if is_filter(segment):
            if not isinstance(node, list):
                raise DataShapeError(f"{where}: expected a list for '{segment}'")
            key, match = parse_filter(segment)
            found = _step(node, segment, where=where)
            if found is MISSING:
                found = {key: match}
                node.append(found)
            if last:
                raise ConfigError(f"{where}: cannot assign to a filter segment")
            node = found
            continue
        if segment.isdigit() and isinstance(node, list):
            position = int(segment)
            if position >= len(node):
                raise DataShapeError(f"{where}: index {position} out of range")
            if last:
                node[position] = value
                return
            node = node[position]
            continue
        if not isinstance(node, dict):
            raise DataShapeError(f"{where}: expected a mapping for '{segment}'")
        if last:
            node[segment] = value
            return
        child = node.get(segment)
        if child is None:
            child = [] if is_filter(segments[index + 1]) else {}
            node[segment] = child
        node = child


def fragment(path: str | Sequence[str], value: Any) -> dict[str, Any]:
    """Build the minimal structural merge fragment setting ``value`` at ``path``."""
    segments = split_path(path)
    if is_filter(segments[0]):
        raise ConfigError(f"field path '{format_path(segments)}' must start with a field")
    leaf: Any = value
    for index in range(len(segments) - 1, -1, -1):
        segment = segments[index]
        if segment.isdigit():
            raise ConfigError(
                f"field path '{format_path(segments)}' uses a positional segment "
                "which cannot be expressed as a merge patch"
            )
        if is_filter(segment):
            if not isinstance(leaf, dict):
                raise ConfigError(
                    f"field path '{format_path(segments)}' cannot end with a filter"
                )
            key, match = parse_filter(segment)
            leaf = [{key: match, **leaf}]
        else:
            leaf = {segment: leaf}
    return leaf
