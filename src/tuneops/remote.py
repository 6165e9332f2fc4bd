"""Wire records exchanged with the remote optimization service.

These mirror the service's JSON payloads. URLs travel in response headers on
the wire, so they are carried as attributes but not serialized by ``to_json``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from tuneops.models import DataShapeError, TuneopsError

PARAMETER_TYPE_INTEGER = "int"
PARAMETER_TYPE_CATEGORICAL = "categorical"
CONSTRAINT_ORDER = "order"
CONSTRAINT_SUM = "sum"
ERROR_EXPERIMENT_STOPPED = "experiment-stopped"


class RemoteError(TuneopsError):
    """An error reported by the remote service, tagged with its type."""

    def __init__(self, message: str, *, error_type: str = ""):
        super().__init__(message)
        self.type = error_type


class ExperimentStoppedError(RemoteError):
    def __init__(self, message: str = "experiment is stopped"):
        super().__init__(message, error_type=ERROR_EXPERIMENT_STOPPED)


def _float_or_none(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise DataShapeError(f"expected a number, got {value!r}") from exc


@dataclass(frozen=True)
class Bounds:
    min: str
    max: str

    def to_json(self) -> dict[str, Any]:
        return {"min": self.min, "max": self.max}


@dataclass(frozen=True)
class RemoteParameter:
    name: str
    type: str
    bounds: Bounds | None = None
    values: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "name": self.name}
        if self.bounds is not None:
            out["bounds"] = self.bounds.to_json()
        if self.values:
            out["values"] = list(self.values)
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "RemoteParameter":
        bounds_raw = payload.get("bounds")
        return cls(
            name=str(payload["name"]),
            type=str(payload.get("type", PARAMETER_TYPE_INTEGER)),
            bounds=None
            if bounds_raw is None
            else Bounds(min=str(bounds_raw["min"]), max=str(bounds_raw["max"])),
            values=tuple(str(v) for v in payload.get("values", []) or []),
        )


@dataclass(frozen=True)
class RemoteSumParameter:
    name: str
    weight: float


@dataclass(frozen=True)
class RemoteConstraint:
    name: str
    constraint_type: str
    lower_parameter: str = ""
    upper_parameter: str = ""
    is_upper_bound: bool = False
    bound: float = 0.0
    parameters: tuple[RemoteSumParameter, ...] = ()

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "constraintType": self.constraint_type}
        if self.constraint_type == CONSTRAINT_ORDER:
            out["lowerParameter"] = self.lower_parameter
            out["upperParameter"] = self.upper_parameter
        else:
            out["isUpperBound"] = self.is_upper_bound
            out["bound"] = self.bound
            out["parameters"] = [
                {"name": p.name, "weight": p.weight} for p in self.parameters
            ]
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "RemoteConstraint":
        return cls(
            name=str(payload.get("name", "")),
            constraint_type=str(payload.get("constraintType", "")),
            lower_parameter=str(payload.get("lowerParameter", "") or ""),
            upper_parameter=str(payload.get("upperParameter", "") or ""),
            is_upper_bound=bool(payload.get("isUpperBound", False)),
            bound=float(payload.get("bound", 0.0) or 0.0),
            parameters=tuple(
                RemoteSumParameter(name=str(p["name"]), weight=float(p["weight"]))
                for p in payload.get("parameters", []) or []
            ),
        )


@dataclass(frozen=True)
class RemoteMetric:
    name: str
    minimize: bool = True
    optimize: bool | None = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "minimize": self.minimize}
        if self.optimize is not None:
            out["optimize"] = self.optimize
        return out


@dataclass
class RemoteExperiment:
    labels: dict[str, str] = field(default_factory=dict)
    optimization: list[tuple[str, str]] = field(default_factory=list)
    parameters: list[RemoteParameter] = field(default_factory=list)
    constraints: list[RemoteConstraint] = field(default_factory=list)
    metrics: list[RemoteMetric] = field(default_factory=list)
    self_url: str = ""
    next_trial_url: str = ""
    trials_url: str = ""
    last_modified: str = ""

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.labels:
            out["labels"] = dict(self.labels)
        if self.optimization:
            out["optimization"] = [
                {"name": name, "value": value} for name, value in self.optimization
            ]
        out["parameters"] = [p.to_json() for p in self.parameters]
        if self.constraints:
            out["constraints"] = [c.to_json() for c in self.constraints]
        out["metrics"] = [m.to_json() for m in self.metrics]
        return out

    @classmethod
    def from_json(
        cls,
        payload: Mapping[str, Any],
        *,
        self_url: str = "",
        next_trial_url: str = "",
        trials_url: str = "",
    ) -> "RemoteExperiment":
        return cls(
            labels={str(k): str(v) for k, v in (payload.get("labels") or {}).items()},
            optimization=[
                (str(o["name"]), str(o.get("value", "")))
                for o in payload.get("optimization", []) or []
            ],
            parameters=[
                RemoteParameter.from_json(p) for p in payload.get("parameters", []) or []
            ],
            constraints=[
                RemoteConstraint.from_json(c) for c in payload.get("constraints", []) or []
            ],
            metrics=[
                RemoteMetric(
                    name=str(m["name"]),
                    minimize=bool(m.get("minimize", True)),
                    optimize=m.get("optimize"),
                )
                for m in payload.get("metrics", []) or []
            ],
            self_url=self_url,
            next_trial_url=next_trial_url,
            trials_url=trials_url,
        )


@dataclass(frozen=True)
class RemoteAssignment:
    parameter_name: str
    value: int | str

    def to_json(self) -> dict[str, Any]:
        return {"parameterName": self.parameter_name, "value": self.value}


@dataclass
class TrialAssignments:
    labels: dict[str, str] = field(default_factory=dict)
    assignments: list[RemoteAssignment] = field(default_factory=list)
    self_url: str = ""

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"assignments": [a.to_json() for a in self.assignments]}
        if self.labels:
            out["labels"] = dict(self.labels)
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any], *, self_url: str = "") -> "TrialAssignments":
        assignments = []
        for raw in payload.get("assignments", []) or []:
            value = raw.get("value")
            if isinstance(value, bool):
                raise DataShapeError(
                    f"assignment for '{raw.get('parameterName')}' must be a number or string"
                )
            if isinstance(value, float) and value.is_integer():
                value = int(value)
            if not isinstance(value, (int, str)):
                raise DataShapeError(
                    f"assignment for '{raw.get('parameterName')}' must be a number or string"
                )
            assignments.append(
                RemoteAssignment(parameter_name=str(raw["parameterName"]), value=value)
            )
        return cls(
            labels={str(k): str(v) for k, v in (payload.get("labels") or {}).items()},
            assignments=assignments,
            self_url=self_url,
        )


@dataclass(frozen=True)
class RemoteValue:
    metric_name: str
    value: float
    error: float | None = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"metricName": self.metric_name, "value": self.value}
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class TrialValues:
    start_time: str | None = None
    completion_time: str | None = None
    values: list[RemoteValue] = field(default_factory=list)
    failed: bool = False
    failure_reason: str = ""
    failure_message: str = ""

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.start_time:
            out["startTime"] = self.start_time
        if self.completion_time:
            out["completionTime"] = self.completion_time
        if self.failed:
            out["failed"] = True
            out["failureReason"] = self.failure_reason
            out["failureMessage"] = self.failure_message
        else:
            out["values"] = [v.to_json() for v in self.values]
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "TrialValues":
        return cls(
            start_time=payload.get("startTime"),
            completion_time=payload.get("completionTime"),
            values=[
                RemoteValue(
                    metric_name=str(v["metricName"]),
                    value=float(v["value"]),
                    error=_float_or_none(v.get("error")),
                )
                for v in payload.get("values", []) or []
            ],
            failed=bool(payload.get("failed", False)),
            failure_reason=str(payload.get("failureReason", "") or ""),
            failure_message=str(payload.get("failureMessage", "") or ""),
        )
