"""Structural merge of resource trees.

``strategic_merge`` follows the cluster's type-aware merge: lists of known
kinds (containers, env, volumes, ...) merge element-wise by a merge key,
``null`` deletes a field, and ``$patch: delete`` / ``$patch: replace``
directives remove or replace an element. Lists without a known merge key are
replaced. ``json_merge`` is the plain RFC 7386 merge patch.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any, Mapping

from tuneops.models import PatchError

_MERGE_KEYS = {
    "containers": "name",
    "initContainers": "name",
    "ephemeralContainers": "name",
    "env": "name",
    "volumes": "name",
    "imagePullSecrets": "name",
    "volumeMounts": "mountPath",
    "volumeDevices": "devicePath",
    "hostAliases": "ip",
}
_DIRECTIVE = "$patch"


def _is_directive(key: str) -> bool:
    return key == _DIRECTIVE or key == "$retainKeys" or key.startswith("$setElementOrder/")


def _merge_key(field_name: str, items: list[Any]) -> str | None:
    if not items or not all(isinstance(item, Mapping) for item in items):
        return None
    if field_name == "ports":
        # Container ports merge on containerPort, service ports on port.
        if any("containerPort" in item for item in items):
            return "containerPort"
        return "port"
    return _MERGE_KEYS.get(field_name)


def _strip(value: Any) -> Any:
    if isinstance(value, Mapping):
        return _merge_map({}, value)
    if isinstance(value, list):
        return [_strip(item) for item in value]
    return deepcopy(value)


def _merge_map(base: dict[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    directive = patch.get(_DIRECTIVE)
    if directive == "replace":
        return {
            str(k): _strip(v)
            for k, v in patch.items()
            if not _is_directive(str(k)) and v is not None
        }
    if directive not in (None, "delete", "merge"):
        raise PatchError(f"unsupported patch directive '{directive}'")
    for raw_key, value in patch.items():
        key = str(raw_key)
        if _is_directive(key):
            continue
        if value is None:
            base.pop(key, None)
            continue
        existing = base.get(key)
        if isinstance(value, Mapping):
            if value.get(_DIRECTIVE) == "delete":
                base.pop(key, None)
                continue
            base[key] = _merge_map(existing if isinstance(existing, dict) else {}, value)
        elif isinstance(value, list):
            base[key] = _merge_list(
                key, existing if isinstance(existing, list) else [], value
            )
        else:
            base[key] = deepcopy(value)
    return base


def _find(items: list[Any], key: str, value: Any) -> int | None:
    for index, item in enumerate(items):
        if isinstance(item, Mapping) and item.get(key) == value:
            return index
    return None


def _merge_list(field_name: str, base: list[Any], patch: list[Any]) -> list[Any]:
    merge_key = _merge_key(field_name, patch)
    if merge_key is None:
        return [_strip(item) for item in patch]
    if any(
        item.get(_DIRECTIVE) == "replace" and len(item) == 1 for item in patch
    ):
        return [
            _strip(item)
            for item in patch
            if not (item.get(_DIRECTIVE) == "replace" and len(item) == 1)
        ]
    merged = [deepcopy(item) for item in base]
    for item in patch:
        if merge_key not in item:
            raise PatchError(
                f"elements of list '{field_name}' must carry merge key '{merge_key}'"
            )
        index = _find(merged, merge_key, item[merge_key])
        if item.get(_DIRECTIVE) == "delete":
            if index is not None:
                del merged[index]
            continue
        if index is None:
            merged.append(_merge_map({}, item))
        else:
            current = merged[index]
            merged[index] = _merge_map(
                current if isinstance(current, dict) else {}, item
            )
    return merged


def strategic_merge(
    original: Mapping[str, Any], patch: Mapping[str, Any]
) -> dict[str, Any]:
    if not isinstance(original, Mapping) or not isinstance(patch, Mapping):
        raise PatchError("strategic merge requires mapping documents")
    return _merge_map(deepcopy(dict(original)), patch)


def json_merge(target: Any, patch: Any) -> Any:
    if not isinstance(patch, Mapping):
        return deepcopy(patch)
    result = deepcopy(dict(target)) if isinstance(target, Mapping) else {}
    for raw_key, value in patch.items():
        key = str(raw_key)
        if value is None:
            result.pop(key, None)
        else:
            result[key] = json_merge(result.get(key), value)
    return result
