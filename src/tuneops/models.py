from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Mapping

API_VERSION = "tuneops.dev/v1beta1"
LEGACY_API_VERSION = "tuneops.dev/v1alpha1"
LABEL_PREFIX = "tuneops.dev/"
LABEL_EXPERIMENT = "tuneops.dev/experiment"
LABEL_TRIAL = "tuneops.dev/trial"
LABEL_TRIAL_ROLE = "tuneops.dev/trial-role"
ANNOTATION_EXPERIMENT_URL = "tuneops.dev/experiment-url"
ANNOTATION_NEXT_TRIAL_URL = "tuneops.dev/next-trial-url"
ANNOTATION_REPORT_TRIAL_URL = "tuneops.dev/report-trial-url"
SERVER_FINALIZER = "serverFinalizer.tuneops.dev"

TRIAL_COMPLETE = "Complete"
TRIAL_FAILED = "Failed"
EXPERIMENT_FAILED = "Failed"
EXPERIMENT_COMPLETE = "Complete"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

PATCH_STRATEGIC = "strategic"
PATCH_MERGE = "merge"
PATCH_TYPES = (PATCH_STRATEGIC, PATCH_MERGE)


class TuneopsError(RuntimeError):
    """Base error for experiment generation and synchronization failures."""


class ConfigError(TuneopsError):
    """Raised when selectors, settings or definitions are invalid."""


class IncompatibleDefinitionError(ConfigError):
    """Raised when local and remote experiment definitions disagree."""


class DataShapeError(TuneopsError):
    """Raised when a value does not have the shape its consumer requires."""


class PatchError(DataShapeError):
    """Raised when a patch template cannot be rendered or applied."""


class RecordBusyError(TuneopsError):
    """Raised when a record is already owned by another in-flight step."""


def _str_map(value: Any, *, label: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _int_or_str(value: Any) -> int | str:
    if isinstance(value, bool):
        raise DataShapeError(f"expected integer or string, got {value!r}")
    if isinstance(value, int):
        return value
    return str(value)


@dataclass(frozen=True, order=True)
class TargetRef:
    api_version: str
    kind: str
    name: str
    namespace: str = ""

    @property
    def group(self) -> str:
        if "/" not in self.api_version:
            return ""
        return self.api_version.split("/", 1)[0]

    @property
    def version(self) -> str:
        return self.api_version.rsplit("/", 1)[-1]

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
        }
        if self.namespace:
            out["namespace"] = self.namespace
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "TargetRef":
        return cls(
            api_version=str(payload.get("apiVersion", "")),
            kind=str(payload.get("kind", "")),
            name=str(payload.get("name", "")),
            namespace=str(payload.get("namespace", "") or ""),
        )

    def __str__(self) -> str:
        kind = f"{self.kind}.{self.group}" if self.group else self.kind
        if self.namespace:
            return f"{kind}/{self.namespace}/{self.name}"
        return f"{kind}/{self.name}"


@dataclass(frozen=True)
class Parameter:
    name: str
    min: int = 0
    max: int = 0
    values: tuple[str, ...] = ()
    baseline: int | str | None = None

    @property
    def is_categorical(self) -> bool:
        return bool(self.values)

    @property
    def is_degenerate(self) -> bool:
        # A constant parameter carries no information for the optimizer.
        return self.min == self.max and not self.values

    def validate(self) -> None:
        if not self.name:
            raise DataShapeError("parameter name must be non-empty")
        if self.is_categorical:
            if self.baseline is not None and str(self.baseline) not in self.values:
                raise DataShapeError(
                    f"baseline out of range for parameter '{self.name}'"
                )
            return
        if self.min > self.max:
            raise DataShapeError(
                f"parameter '{self.name}' has min {self.min} greater than max {self.max}"
            )
        if self.baseline is not None:
            if isinstance(self.baseline, str) or not (
                self.min <= self.baseline <= self.max
            ):
                raise DataShapeError(
                    f"baseline out of range for parameter '{self.name}'"
                )

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.values:
            out["values"] = list(self.values)
        else:
            out["min"] = self.min
            out["max"] = self.max
        if self.baseline is not None:
            out["baseline"] = self.baseline
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Parameter":
        baseline = payload.get("baseline")
        return cls(
            name=str(payload["name"]),
            min=int(payload.get("min", 0)),
            max=int(payload.get("max", 0)),
            values=tuple(str(v) for v in payload.get("values", []) or []),
            baseline=None if baseline is None else _int_or_str(baseline),
        )


@dataclass(frozen=True)
class Metric:
    name: str
    minimize: bool = True
    optimize: bool | None = None
    type: str = ""
    query: str = ""

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "minimize": self.minimize}
        if self.optimize is not None:
            out["optimize"] = self.optimize
        if self.type:
            out["type"] = self.type
        if self.query:
            out["query"] = self.query
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Metric":
        optimize = payload.get("optimize")
        return cls(
            name=str(payload["name"]),
            minimize=bool(payload.get("minimize", True)),
            optimize=None if optimize is None else bool(optimize),
            type=str(payload.get("type", "") or ""),
            query=str(payload.get("query", "") or ""),
        )


@dataclass(frozen=True)
class OrderConstraint:
    lower_parameter: str
    upper_parameter: str


@dataclass(frozen=True)
class SumConstraintParameter:
    name: str
    weight: str


@dataclass(frozen=True)
class SumConstraint:
    bound: str
    parameters: tuple[SumConstraintParameter, ...] = ()
    is_upper_bound: bool = False


@dataclass(frozen=True)
class Constraint:
    name: str
    order: OrderConstraint | None = None
    sum: SumConstraint | None = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.order is not None:
            out["order"] = {
                "lowerParameter": self.order.lower_parameter,
                "upperParameter": self.order.upper_parameter,
            }
        if self.sum is not None:
            out["sum"] = {
                "bound": self.sum.bound,
                "isUpperBound": self.sum.is_upper_bound,
                "parameters": [
                    {"name": p.name, "weight": p.weight} for p in self.sum.parameters
                ],
            }
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Constraint":
        order_raw = payload.get("order")
        sum_raw = payload.get("sum")
        order = None
        if order_raw is not None:
            order = OrderConstraint(
                lower_parameter=str(order_raw["lowerParameter"]),
                upper_parameter=str(order_raw["upperParameter"]),
            )
        sum_constraint = None
        if sum_raw is not None:
            sum_constraint = SumConstraint(
                bound=str(sum_raw.get("bound", "0")),
                is_upper_bound=bool(sum_raw.get("isUpperBound", False)),
                parameters=tuple(
                    SumConstraintParameter(name=str(p["name"]), weight=str(p["weight"]))
                    for p in sum_raw.get("parameters", []) or []
                ),
            )
        return cls(name=str(payload.get("name", "")), order=order, sum=sum_constraint)


@dataclass(frozen=True)
class Optimization:
    name: str
    value: str

    def to_json(self) -> dict[str, Any]:
        return {"name": self.name, "value": self.value}


@dataclass(frozen=True)
class PatchTemplate:
    patch: str
    target_ref: TargetRef | None = None
    patch_type: str = PATCH_STRATEGIC

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.patch_type, "patch": self.patch}
        if self.target_ref is not None:
            out["targetRef"] = self.target_ref.to_json()
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "PatchTemplate":
        target_raw = payload.get("targetRef")
        return cls(
            patch=str(payload.get("patch", "")),
            target_ref=None if target_raw is None else TargetRef.from_json(target_raw),
            patch_type=str(payload.get("type", PATCH_STRATEGIC) or PATCH_STRATEGIC),
        )


@dataclass(frozen=True)
class PatchOperation:
    target_ref: TargetRef
    patch_type: str
    data: str

    def to_json(self) -> dict[str, Any]:
        return {
            "targetRef": self.target_ref.to_json(),
            "patchType": self.patch_type,
            "data": self.data,
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "PatchOperation":
        return cls(
            target_ref=TargetRef.from_json(payload["targetRef"]),
            patch_type=str(payload.get("patchType", PATCH_STRATEGIC)),
            data=str(payload.get("data", "")),
        )


@dataclass(frozen=True)
class Assignment:
    name: str
    value: int | str

    def to_json(self) -> dict[str, Any]:
        return {"name": self.name, "value": self.value}


@dataclass(frozen=True)
class TrialValue:
    name: str
    value: str
    error: str = ""

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "value": self.value}
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Condition":
        return cls(
            type=str(payload["type"]),
            status=str(payload.get("status", CONDITION_UNKNOWN)),
            reason=str(payload.get("reason", "") or ""),
            message=str(payload.get("message", "") or ""),
            last_transition_time=str(payload.get("lastTransitionTime", "") or ""),
        )


@dataclass
class TrialTemplate:
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    job_template: dict[str, Any] | None = None
    approximate_runtime_sec: float | None = None
    start_time_offset_sec: float | None = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        metadata: dict[str, Any] = {}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if metadata:
            out["metadata"] = metadata
        spec: dict[str, Any] = {}
        if self.job_template is not None:
            spec["jobTemplate"] = deepcopy(self.job_template)
        if self.approximate_runtime_sec is not None:
            spec["approximateRuntimeSec"] = self.approximate_runtime_sec
        if self.start_time_offset_sec is not None:
            spec["startTimeOffsetSec"] = self.start_time_offset_sec
        if spec:
            out["spec"] = spec
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "TrialTemplate":
        metadata = dict(payload.get("metadata", {}) or {})
        spec = dict(payload.get("spec", {}) or {})
        job_template = spec.get("jobTemplate")
        return cls(
            labels=_str_map(metadata.get("labels"), label="trialTemplate.labels"),
            annotations=_str_map(
                metadata.get("annotations"), label="trialTemplate.annotations"
            ),
            job_template=None if job_template is None else deepcopy(dict(job_template)),
            approximate_runtime_sec=_optional_float(spec.get("approximateRuntimeSec")),
            start_time_offset_sec=_optional_float(spec.get("startTimeOffsetSec")),
        )


@dataclass
class Experiment:
    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    creation_timestamp: str = ""
    replicas: int | None = None
    parameters: list[Parameter] = field(default_factory=list)
    metrics: list[Metric] = field(default_factory=list)
    constraints: list[Constraint] = field(default_factory=list)
    optimization: list[Optimization] = field(default_factory=list)
    patches: list[PatchTemplate] = field(default_factory=list)
    trial_template: TrialTemplate = field(default_factory=TrialTemplate)
    conditions: list[Condition] = field(default_factory=list)

    def parameter(self, name: str) -> Parameter | None:
        for parameter in self.parameters:
            if parameter.name == name:
                return parameter
        return None

    def to_json(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self.name}
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if self.finalizers:
            metadata["finalizers"] = list(self.finalizers)
        if self.creation_timestamp:
            metadata["creationTimestamp"] = self.creation_timestamp
        spec: dict[str, Any] = {}
        if self.replicas is not None:
            spec["replicas"] = self.replicas
        if self.optimization:
            spec["optimization"] = [o.to_json() for o in self.optimization]
        spec["parameters"] = [p.to_json() for p in self.parameters]
        if self.constraints:
            spec["constraints"] = [c.to_json() for c in self.constraints]
        spec["metrics"] = [m.to_json() for m in self.metrics]
        if self.patches:
            spec["patches"] = [p.to_json() for p in self.patches]
        trial_template = self.trial_template.to_json()
        if trial_template:
            spec["trialTemplate"] = trial_template
        out: dict[str, Any] = {
            "apiVersion": API_VERSION,
            "kind": "Experiment",
            "metadata": metadata,
            "spec": spec,
        }
        if self.conditions:
            out["status"] = {"conditions": [c.to_json() for c in self.conditions]}
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Experiment":
        metadata = dict(payload.get("metadata", {}) or {})
        spec = dict(payload.get("spec", {}) or {})
        status = dict(payload.get("status", {}) or {})
        if not metadata.get("name"):
            raise DataShapeError("Experiment metadata.name must be non-empty")
        replicas = spec.get("replicas")
        return cls(
            name=str(metadata["name"]),
            namespace=str(metadata.get("namespace", "") or ""),
            labels=_str_map(metadata.get("labels"), label="metadata.labels"),
            annotations=_str_map(
                metadata.get("annotations"), label="metadata.annotations"
            ),
            finalizers=[str(f) for f in metadata.get("finalizers", []) or []],
            creation_timestamp=str(metadata.get("creationTimestamp", "") or ""),
            replicas=None if replicas is None else int(replicas),
            parameters=[Parameter.from_json(p) for p in spec.get("parameters", []) or []],
            metrics=[Metric.from_json(m) for m in spec.get("metrics", []) or []],
            constraints=[
                Constraint.from_json(c) for c in spec.get("constraints", []) or []
            ],
            optimization=[
                Optimization(name=str(o["name"]), value=str(o["value"]))
                for o in spec.get("optimization", []) or []
            ],
            patches=[PatchTemplate.from_json(p) for p in spec.get("patches", []) or []],
            trial_template=TrialTemplate.from_json(spec.get("trialTemplate", {}) or {}),
            conditions=[
                Condition.from_json(c) for c in status.get("conditions", []) or []
            ],
        )


# Fields that older trial records kept under `spec` and that now live in `status`.
_LEGACY_STATUS_FIELDS = ("patchOperations", "readinessChecks")


def upgrade_trial(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``payload`` in the current trial layout.

    Older records named the job template ``spec.template`` and kept patch
    operations and readiness checks under ``spec``. Current records are returned
    unchanged.
    """
    out = deepcopy(dict(payload))
    spec = dict(out.get("spec", {}) or {})
    status = dict(out.get("status", {}) or {})
    legacy = out.get("apiVersion") == LEGACY_API_VERSION
    if "template" in spec:
        legacy = True
        template = spec.pop("template")
        if spec.get("jobTemplate") is None and template is not None:
            spec["jobTemplate"] = template
    for key in _LEGACY_STATUS_FIELDS:
        if key in spec:
            legacy = True
            moved = spec.pop(key)
            if moved is not None:
                status[key] = moved
    if not legacy:
        return out
    out["apiVersion"] = API_VERSION
    out["spec"] = spec
    if status:
        out["status"] = status
    return out


@dataclass
class Trial:
    name: str = ""
    generate_name: str = ""
    namespace: str = ""
    experiment: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    assignments: list[Assignment] = field(default_factory=list)
    values: list[TrialValue] = field(default_factory=list)
    job_template: dict[str, Any] | None = None
    approximate_runtime_sec: float | None = None
    start_time_offset_sec: float | None = None
    patch_operations: list[PatchOperation] = field(default_factory=list)
    readiness_checks: list[dict[str, Any]] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)
    start_time: str | None = None
    completion_time: str | None = None
    phase: str = ""
    assignments_summary: str = ""
    values_summary: str = ""

    def assignment_map(self) -> dict[str, int | str]:
        return {a.name: a.value for a in self.assignments}

    def to_json(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {}
        if self.name:
            metadata["name"] = self.name
        if self.generate_name:
            metadata["generateName"] = self.generate_name
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if self.finalizers:
            metadata["finalizers"] = list(self.finalizers)
        spec: dict[str, Any] = {
            "experimentRef": {"name": self.experiment},
            "assignments": [a.to_json() for a in self.assignments],
        }
        if self.values:
            spec["values"] = [v.to_json() for v in self.values]
        if self.job_template is not None:
            spec["jobTemplate"] = deepcopy(self.job_template)
        if self.approximate_runtime_sec is not None:
            spec["approximateRuntimeSec"] = self.approximate_runtime_sec
        if self.start_time_offset_sec is not None:
            spec["startTimeOffsetSec"] = self.start_time_offset_sec
        status: dict[str, Any] = {}
        if self.phase:
            status["phase"] = self.phase
        if self.assignments_summary:
            status["assignments"] = self.assignments_summary
        if self.values_summary:
            status["values"] = self.values_summary
        if self.start_time:
            status["startTime"] = self.start_time
        if self.completion_time:
            status["completionTime"] = self.completion_time
        if self.conditions:
            status["conditions"] = [c.to_json() for c in self.conditions]
        if self.patch_operations:
            status["patchOperations"] = [p.to_json() for p in self.patch_operations]
        if self.readiness_checks:
            status["readinessChecks"] = deepcopy(self.readiness_checks)
        out: dict[str, Any] = {
            "apiVersion": API_VERSION,
            "kind": "Trial",
            "metadata": metadata,
            "spec": spec,
        }
        if status:
            out["status"] = status
        return out

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Trial":
        payload = upgrade_trial(payload)
        metadata = dict(payload.get("metadata", {}) or {})
        spec = dict(payload.get("spec", {}) or {})
        status = dict(payload.get("status", {}) or {})
        job_template = spec.get("jobTemplate")
        return cls(
            name=str(metadata.get("name", "") or ""),
            generate_name=str(metadata.get("generateName", "") or ""),
            namespace=str(metadata.get("namespace", "") or ""),
            experiment=str(dict(spec.get("experimentRef", {}) or {}).get("name", "")),
            labels=_str_map(metadata.get("labels"), label="metadata.labels"),
            annotations=_str_map(
                metadata.get("annotations"), label="metadata.annotations"
            ),
            finalizers=[str(f) for f in metadata.get("finalizers", []) or []],
            assignments=[
                Assignment(name=str(a["name"]), value=_int_or_str(a["value"]))
                for a in spec.get("assignments", []) or []
            ],
            values=[
                TrialValue(
                    name=str(v["name"]),
                    value=str(v.get("value", "")),
                    error=str(v.get("error", "") or ""),
                )
                for v in spec.get("values", []) or []
            ],
            job_template=None if job_template is None else deepcopy(dict(job_template)),
            approximate_runtime_sec=_optional_float(spec.get("approximateRuntimeSec")),
            start_time_offset_sec=_optional_float(spec.get("startTimeOffsetSec")),
            patch_operations=[
                PatchOperation.from_json(p)
                for p in status.get("patchOperations", []) or []
            ],
            readiness_checks=[
                dict(r) for r in status.get("readinessChecks", []) or []
            ],
            conditions=[
                Condition.from_json(c) for c in status.get("conditions", []) or []
            ],
            start_time=status.get("startTime"),
            completion_time=status.get("completionTime"),
            phase=str(status.get("phase", "") or ""),
            assignments_summary=str(status.get("assignments", "") or ""),
            values_summary=str(status.get("values", "") or ""),
        )
