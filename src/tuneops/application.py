"""Application descriptions: what to tune and which objectives to measure."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from tuneops.models import ConfigError, Metric
from tuneops.quantity import parse_quantity
from tuneops.resources import format_label_selector

LATENCY_TYPES = ("p50", "p95", "p99", "mean", "min", "max")

_LATENCY_ALIASES = {
    "p50": "p50",
    "50": "p50",
    "50th": "p50",
    "median": "p50",
    "p95": "p95",
    "95": "p95",
    "95th": "p95",
    "p99": "p99",
    "99": "p99",
    "99th": "p99",
    "mean": "mean",
    "avg": "mean",
    "average": "mean",
    "min": "min",
    "minimum": "min",
    "max": "max",
    "maximum": "max",
}

# Relative weights of requested CPU and memory for the cost style objectives.
_REQUEST_WEIGHTS: dict[str, dict[str, str]] = {
    "cost": {"cpu": "17", "memory": "3"},
    "cost-gcp": {"cpu": "17", "memory": "2"},
    "gcp-cost": {"cpu": "17", "memory": "2"},
    "cost-aws": {"cpu": "18", "memory": "5"},
    "aws-cost": {"cpu": "18", "memory": "5"},
    "cpu-requests": {"cpu": "1"},
    "cpu": {"cpu": "1"},
    "memory-requests": {"memory": "1"},
    "memory": {"memory": "1"},
}

_ALLOWED_KEYS = {"apiVersion", "kind", "metadata", "parameters", "objectives", "resources", "scenarios"}
_OBJECTIVE_KEYS = {"name", "requests", "latency", "optimize"}


def fix_latency(value: str) -> str:
    """Normalize a latency spelling (``95th``, ``-p95``, ``Average``) or return ''."""
    token = value.strip().lower().strip("-_ ")
    return _LATENCY_ALIASES.get(token, "")


@dataclass(frozen=True)
class Objective:
    name: str = ""
    requests: dict[str, str] | None = None
    latency: str = ""
    optimize: bool | None = None

    def _config_count(self) -> int:
        return int(self.requests is not None) + int(bool(self.latency))

    def _with_weights(self, weights: Mapping[str, str]) -> "Objective":
        if self.requests is None and self._config_count() != 0:
            return self
        merged = dict(self.requests or {})
        for resource_name, weight in weights.items():
            merged.setdefault(resource_name, weight)
        return replace(self, requests=merged)

    def defaulted(self) -> "Objective":
        key = self.name.lower()
        if key in _REQUEST_WEIGHTS:
            return self._with_weights(_REQUEST_WEIGHTS[key])

        objective = self
        latency = fix_latency(self.name.replace("latency", ""))
        if latency and not objective.latency and objective.requests is None:
            objective = replace(objective, latency=latency)
        if objective.requests is not None and not objective.requests:
            objective = replace(objective, requests={"cpu": "1", "memory": "1"})
        if not objective.name:
            if objective.requests is not None:
                objective = replace(objective, name="requests")
            elif objective.latency:
                objective = replace(objective, name=f"latency-{objective.latency}")
        return objective

    def to_metric(self) -> Metric:
        if not self.name:
            raise ConfigError("objective has no name and no requests or latency configuration")
        if self.requests is not None:
            return Metric(
                name=self.name,
                minimize=True,
                optimize=self.optimize,
                type="requests",
                query=format_label_selector(self.requests),
            )
        if self.latency:
            return Metric(
                name=self.name,
                minimize=True,
                optimize=self.optimize,
                type="latency",
                query=self.latency,
            )
        raise ConfigError(f"objective '{self.name}' is not a known objective")


@dataclass(frozen=True)
class Application:
    name: str
    namespace: str = ""
    objectives: tuple[Objective, ...] = ()
    container_resources_labels: dict[str, str] = field(default_factory=dict)

    def defaulted(self) -> "Application":
        return replace(self, objectives=tuple(o.defaulted() for o in self.objectives))

    def metrics(self) -> list[Metric]:
        metrics = [o.to_metric() for o in self.defaulted().objectives]
        names = [m.name for m in metrics]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"application objectives have duplicate names: {duplicates}")
        return metrics

    @property
    def container_resources_selector(self) -> str:
        return format_label_selector(self.container_resources_labels)


def _objective_from_mapping(raw: Any, *, index: int) -> Objective:
    label = f"objectives[{index}]"
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{label} must be a mapping")
    unknown = sorted(set(raw) - _OBJECTIVE_KEYS)
    if unknown:
        raise ConfigError(f"{label} has unknown keys: {unknown}")
    requests = raw.get("requests")
    weights: dict[str, str] | None = None
    if requests is not None:
        if not isinstance(requests, Mapping):
            raise ConfigError(f"{label}.requests must be a mapping")
        raw_weights = requests.get("weights") or {}
        if not isinstance(raw_weights, Mapping):
            raise ConfigError(f"{label}.requests.weights must be a mapping")
        weights = {}
        for resource_name, weight in raw_weights.items():
            parse_quantity(weight)
            weights[str(resource_name)] = str(weight)
    latency_raw = raw.get("latency")
    latency = ""
    if latency_raw is not None:
        latency_type = latency_raw
        if isinstance(latency_raw, Mapping):
            latency_type = latency_raw.get("latencyType", "")
        latency = fix_latency(str(latency_type))
        if not latency:
            raise ConfigError(
                f"{label}.latency must be one of {list(LATENCY_TYPES)}, got {latency_type!r}"
            )
    optimize = raw.get("optimize")
    if optimize is not None and not isinstance(optimize, bool):
        raise ConfigError(f"{label}.optimize must be a boolean")
    return Objective(
        name=str(raw.get("name", "") or ""),
        requests=weights,
        latency=latency,
        optimize=optimize,
    )


def application_from_mapping(data: Mapping[str, Any]) -> Application:
    if not isinstance(data, Mapping):
        raise ConfigError("application must be a mapping")
    unknown = sorted(set(data) - _ALLOWED_KEYS)
    if unknown:
        raise ConfigError(f"application has unknown keys: {unknown}")
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, Mapping) or not metadata.get("name"):
        raise ConfigError("application metadata.name must be non-empty")
    objectives_raw = data.get("objectives") or []
    if not isinstance(objectives_raw, list):
        raise ConfigError("application objectives must be a list")
    parameters = data.get("parameters") or {}
    if not isinstance(parameters, Mapping):
        raise ConfigError("application parameters must be a mapping")
    container_resources = parameters.get("containerResources") or {}
    if not isinstance(container_resources, Mapping):
        raise ConfigError("application parameters.containerResources must be a mapping")
    labels = container_resources.get("labels") or {}
    if not isinstance(labels, Mapping):
        raise ConfigError("application parameters.containerResources.labels must be a mapping")
    return Application(
        name=str(metadata["name"]),
        namespace=str(metadata.get("namespace", "") or ""),
        objectives=tuple(
            _objective_from_mapping(raw, index=i) for i, raw in enumerate(objectives_raw)
        ),
        container_resources_labels={str(k): str(v) for k, v in labels.items()},
    )
