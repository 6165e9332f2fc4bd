from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tuneops.models import ConfigError, Optimization
from tuneops.selectors import SELECTOR_TYPES, GenericSelector, default_selectors

DEFAULT_APPROXIMATE_RUNTIME_SEC = 120.0
SETTINGS_ALLOWED_KEYS = {
    "selectors",
    "approximateRuntimeSec",
    "startTimeOffsetSec",
    "optimization",
    "namespace",
}
_SELECTOR_COMMON_KEYS = {
    "type",
    "group",
    "version",
    "kind",
    "namespace",
    "name",
    "labelSelector",
    "path",
    "create",
}
SELECTOR_ALLOWED_KEYS = {
    "replicas": _SELECTOR_COMMON_KEYS,
    "containerResources": _SELECTOR_COMMON_KEYS,
    "envVar": {*_SELECTOR_COMMON_KEYS, "variable", "values"},
}
_SELECTOR_FIELDS = {
    "group": "group",
    "version": "version",
    "kind": "kind",
    "namespace": "namespace",
    "name": "name",
    "labelSelector": "label_selector",
    "path": "path",
    "variable": "variable",
}


@dataclass(frozen=True)
class GeneratorSettings:
    selectors: tuple[GenericSelector, ...] = field(
        default_factory=lambda: tuple(default_selectors())
    )
    approximate_runtime_sec: float = DEFAULT_APPROXIMATE_RUNTIME_SEC
    start_time_offset_sec: float | None = None
    optimization: tuple[Optimization, ...] = ()
    namespace: str = ""


def _require_mapping(value: Any, *, label: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a mapping")
    return {str(k): v for k, v in value.items()}


def _coerce_optional_str(value: Any, *, label: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string")
    return value.strip()


def _coerce_optional_bool(value: Any, *, label: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConfigError(f"{label} must be a boolean")
    return value


def _coerce_optional_seconds(value: Any, *, label: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label} must be a number of seconds")
    if value < 0:
        raise ConfigError(f"{label} cannot be negative")
    return float(value)


def _coerce_str_list(value: Any, *, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{label} must be a list of strings")
    out: list[str] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            raise ConfigError(f"{label} must contain only scalar values")
        out.append(str(item))
    return tuple(out)


def _parse_selector(payload: Any, *, label: str) -> GenericSelector:
    data = _require_mapping(payload, label=label)
    selector_type = data.get("type")
    if selector_type not in SELECTOR_TYPES:
        raise ConfigError(
            f"{label}.type must be one of {sorted(SELECTOR_TYPES)}, got {selector_type!r}"
        )
    allowed = SELECTOR_ALLOWED_KEYS[selector_type]
    unknown = sorted(set(data.keys()) - allowed)
    if unknown:
        raise ConfigError(
            f"{label} has unknown keys: {unknown}. Allowed keys: {sorted(allowed)}"
        )
    kwargs: dict[str, Any] = {}
    for key, attr in _SELECTOR_FIELDS.items():
        if key in data:
            kwargs[attr] = _coerce_optional_str(data[key], label=f"{label}.{key}")
    if "create" in data:
        kwargs["create"] = _coerce_optional_bool(data["create"], label=f"{label}.create")
    if "values" in data:
        kwargs["values"] = _coerce_str_list(data["values"], label=f"{label}.values")
    try:
        return SELECTOR_TYPES[selector_type](**kwargs)
    except ConfigError as exc:
        raise ConfigError(f"{label}: {exc}") from exc


def _parse_optimization(value: Any, *, label: str) -> tuple[Optimization, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{label} must be a list")
    parsed: list[Optimization] = []
    for index, item in enumerate(value):
        entry = _require_mapping(item, label=f"{label}[{index}]")
        unknown = sorted(set(entry.keys()) - {"name", "value"})
        if unknown:
            raise ConfigError(f"{label}[{index}] has unknown keys: {unknown}")
        name = _coerce_optional_str(entry.get("name"), label=f"{label}[{index}].name")
        if not name:
            raise ConfigError(f"{label}[{index}].name must be non-empty")
        parsed.append(Optimization(name=name, value=str(entry.get("value", ""))))
    return tuple(parsed)


def settings_from_mapping(data: Any, *, source: str = "settings") -> GeneratorSettings:
    raw = _require_mapping({} if data is None else data, label=source)
    unknown = sorted(set(raw.keys()) - SETTINGS_ALLOWED_KEYS)
    if unknown:
        raise ConfigError(
            f"{source} has unknown keys: {unknown}. "
            f"Allowed keys: {sorted(SETTINGS_ALLOWED_KEYS)}"
        )
    if raw.get("selectors") is None:
        selectors = tuple(default_selectors())
    else:
        if not isinstance(raw["selectors"], list):
            raise ConfigError(f"{source}.selectors must be a list")
        selectors = tuple(
            _parse_selector(item, label=f"{source}.selectors[{index}]")
            for index, item in enumerate(raw["selectors"])
        )
    runtime = _coerce_optional_seconds(
        raw.get("approximateRuntimeSec"), label=f"{source}.approximateRuntimeSec"
    )
    return GeneratorSettings(
        selectors=selectors,
        approximate_runtime_sec=(
            DEFAULT_APPROXIMATE_RUNTIME_SEC if runtime is None else runtime
        ),
        start_time_offset_sec=_coerce_optional_seconds(
            raw.get("startTimeOffsetSec"), label=f"{source}.startTimeOffsetSec"
        ),
        optimization=_parse_optimization(
            raw.get("optimization"), label=f"{source}.optimization"
        ),
        namespace=_coerce_optional_str(raw.get("namespace"), label=f"{source}.namespace"),
    )


def load_settings(path: str | Path) -> GeneratorSettings:
    resolved_path = Path(path).expanduser().resolve()
    if not resolved_path.exists():
        raise ConfigError(f"Settings file not found: {resolved_path}")
    try:
        loaded = yaml.safe_load(resolved_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Settings file is not valid YAML: {resolved_path}: {exc}") from exc
    if loaded is not None and not isinstance(loaded, dict):
        raise ConfigError(f"Settings file root must be a mapping: {resolved_path}")
    return settings_from_mapping(loaded, source=str(resolved_path))
