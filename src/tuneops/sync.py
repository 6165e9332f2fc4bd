"""Conversion between local experiment/trial records and remote service records.

The conversion functions are pure apart from mutating the record they are
handed. ``Synchronizer`` composes them with injected remote callables; each
step holds the ownership token of the records it mutates and never retries.
"""

from __future__ import annotations

import contextlib
import re
import threading
from copy import deepcopy
from dataclasses import fields
from typing import Callable, Iterator

from tuneops._logging import context, get_logger
from tuneops.models import (
    ANNOTATION_EXPERIMENT_URL,
    ANNOTATION_NEXT_TRIAL_URL,
    ANNOTATION_REPORT_TRIAL_URL,
    CONDITION_TRUE,
    EXPERIMENT_FAILED,
    LABEL_PREFIX,
    SERVER_FINALIZER,
    TRIAL_FAILED,
    Assignment,
    DataShapeError,
    Experiment,
    Optimization,
    RecordBusyError,
    Trial,
)
from tuneops.patching import render_patches
from tuneops.quantity import is_zero, milli_value
from tuneops.remote import (
    CONSTRAINT_ORDER,
    CONSTRAINT_SUM,
    ERROR_EXPERIMENT_STOPPED,
    PARAMETER_TYPE_CATEGORICAL,
    PARAMETER_TYPE_INTEGER,
    Bounds,
    RemoteAssignment,
    RemoteConstraint,
    RemoteError,
    RemoteExperiment,
    RemoteMetric,
    RemoteParameter,
    RemoteSumParameter,
    RemoteValue,
    TrialAssignments,
    TrialValues,
)
from tuneops.trial import apply_condition, complete_assignments, update_status
from tuneops.validation import check_definition

_log = get_logger("sync")

INT32_MAX = 2**31 - 1
INT32_MIN = -(2**31)
_INTEGER_RE = re.compile(r"^[+-]?\d+$")


def _milli_fraction(quantity: str) -> float:
    return milli_value(quantity) / 1000


def to_remote(
    experiment: Experiment,
) -> tuple[str, RemoteExperiment, TrialAssignments | None]:
    """Convert a local experiment into its remote name, record and baseline."""
    out = RemoteExperiment(
        last_modified=experiment.creation_timestamp,
        self_url=experiment.annotations.get(ANNOTATION_EXPERIMENT_URL, ""),
        next_trial_url=experiment.annotations.get(ANNOTATION_NEXT_TRIAL_URL, ""),
    )
    for key, value in experiment.labels.items():
        out.labels[key.removeprefix(LABEL_PREFIX)] = value

    out.optimization = [(o.name, o.value) for o in experiment.optimization]

    baseline = TrialAssignments(labels={"baseline": "true"})
    for p in experiment.parameters:
        if p.is_degenerate:
            continue
        if p.values:
            out.parameters.append(
                RemoteParameter(
                    name=p.name, type=PARAMETER_TYPE_CATEGORICAL, values=tuple(p.values)
                )
            )
        else:
            out.parameters.append(
                RemoteParameter(
                    name=p.name,
                    type=PARAMETER_TYPE_INTEGER,
                    bounds=Bounds(min=str(p.min), max=str(p.max)),
                )
            )
        if p.baseline is None:
            continue
        if isinstance(p.baseline, str):
            if p.baseline not in p.values:
                raise DataShapeError(f"baseline out of range for parameter '{p.name}'")
        elif not p.min <= p.baseline <= p.max:
            raise DataShapeError(f"baseline out of range for parameter '{p.name}'")
        baseline.assignments.append(
            RemoteAssignment(parameter_name=p.name, value=p.baseline)
        )

    for c in experiment.constraints:
        if c.order is not None:
            out.constraints.append(
                RemoteConstraint(
                    name=c.name,
                    constraint_type=CONSTRAINT_ORDER,
                    lower_parameter=c.order.lower_parameter,
                    upper_parameter=c.order.upper_parameter,
                )
            )
        elif c.sum is not None:
            out.constraints.append(
                RemoteConstraint(
                    name=c.name,
                    constraint_type=CONSTRAINT_SUM,
                    is_upper_bound=c.sum.is_upper_bound,
                    bound=_milli_fraction(c.sum.bound),
                    parameters=tuple(
                        RemoteSumParameter(name=sp.name, weight=_milli_fraction(sp.weight))
                        for sp in c.sum.parameters
                        if not is_zero(sp.weight)
                    ),
                )
            )

    out.metrics = [
        RemoteMetric(name=m.name, minimize=m.minimize, optimize=m.optimize)
        for m in experiment.metrics
    ]

    if not baseline.assignments:
        return experiment.name, out, None
    if len(baseline.assignments) != len(out.parameters):
        raise DataShapeError(
            f"experiment '{experiment.name}': baseline must be specified on all or "
            "none of the parameters"
        )
    return experiment.name, out, baseline


def _add_finalizer(finalizers: list[str]) -> None:
    if SERVER_FINALIZER not in finalizers:
        finalizers.append(SERVER_FINALIZER)


def to_local(experiment: Experiment, remote: RemoteExperiment) -> None:
    experiment.annotations[ANNOTATION_EXPERIMENT_URL] = remote.self_url
    experiment.annotations[ANNOTATION_NEXT_TRIAL_URL] = remote.next_trial_url
    experiment.optimization = [
        Optimization(name=name, value=value) for name, value in remote.optimization
    ]
    _add_finalizer(experiment.finalizers)


def _trial_name(generate_name: str, self_url: str) -> str:
    base = self_url.rstrip("/").rsplit("/", 1)[-1]
    if _INTEGER_RE.match(base):
        return f"{generate_name}{int(base):03d}"
    return generate_name + base


def _clamp(name: str, value: int) -> int:
    # Cluster side values are 32-bit; saturate instead of failing.
    clamped = max(INT32_MIN, min(INT32_MAX, value))
    if clamped != value:
        _log.warning("Clamped assignment %s=%d to %d", name, value, clamped)
    return clamped


def apply_assignment(trial: Trial, suggestion: TrialAssignments) -> None:
    """Record a remote suggestion on a local trial."""
    trial.annotations[ANNOTATION_REPORT_TRIAL_URL] = suggestion.self_url

    if not trial.name and trial.generate_name and suggestion.self_url:
        trial.name = _trial_name(trial.generate_name, suggestion.self_url)

    for a in suggestion.assignments:
        value = a.value if isinstance(a.value, str) else _clamp(a.parameter_name, a.value)
        trial.assignments.append(Assignment(name=a.parameter_name, value=value))

    for key, value in suggestion.labels.items():
        if value:
            trial.labels[key] = value
        else:
            trial.labels.pop(key, None)

    update_status(trial)
    _add_finalizer(trial.finalizers)


def _parse_float(text: str) -> float | None:
    try:
        return float(text)
    except ValueError:
        return None


def to_remote_values(trial: Trial) -> TrialValues:
    out = TrialValues(start_time=trial.start_time, completion_time=trial.completion_time)

    for c in trial.conditions:
        if c.type == TRIAL_FAILED and c.status == CONDITION_TRUE:
            out.failed = True
            out.failure_reason = c.reason
            out.failure_message = c.message

    if out.failed:
        return out
    for v in trial.values:
        value = _parse_float(v.value)
        if value is None:
            _log.debug("Skipping unparseable value %s=%r on trial %s", v.name, v.value, trial.name)
            continue
        out.values.append(
            RemoteValue(metric_name=v.name, value=value, error=_parse_float(v.error))
        )
    return out


def stop_experiment(experiment: Experiment, error: BaseException) -> bool:
    """Pause the experiment when the service reports it stopped; False otherwise."""
    if isinstance(error, RemoteError) and error.type == ERROR_EXPERIMENT_STOPPED:
        experiment.replicas = 0
        experiment.annotations.pop(ANNOTATION_NEXT_TRIAL_URL, None)
        return True
    return False


def fail_experiment(experiment: Experiment, reason: str, error: BaseException) -> bool:
    experiment.replicas = 0
    apply_condition(experiment.conditions, EXPERIMENT_FAILED, CONDITION_TRUE, reason, str(error))
    return True


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class RecordLocks:
    """One exclusive ownership token per experiment or trial record.

    Entries exist only while some caller holds or waits for them. The key is
    taken once on entry, so a trial named while held is released under the
    key it was acquired with.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[tuple[str, str, str], _LockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @staticmethod
    def key(record: Experiment | Trial) -> tuple[str, str, str]:
        name = record.name or f"<unnamed:{id(record)}>"
        return type(record).__name__, record.namespace, name

    def is_held(self, record: Experiment | Trial) -> bool:
        with self._guard:
            entry = self._entries.get(self.key(record))
            return entry is not None and entry.lock.locked()

    @contextlib.contextmanager
    def hold(
        self, record: Experiment | Trial, *, timeout: float | None = None
    ) -> Iterator[None]:
        key = self.key(record)
        with self._guard:
            entry = self._entries.setdefault(key, _LockEntry())
            entry.users += 1
        acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise RecordBusyError(f"{key[0]} {key[1]}/{key[2]} is being updated elsewhere")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.users -= 1
                if not entry.users:
                    del self._entries[key]


class Synchronizer:
    """Drives one synchronization step at a time per record.

    Remote calls are injected: ``create_experiment(name, record)`` returns the
    stored remote record with its URLs, ``get_experiment(url)`` fetches one,
    ``create_trial(remote, baseline)`` submits the baseline suggestion,
    ``next_trial(url)`` returns the next suggestion and
    ``report_trial(url, values)`` reports a finished trial.
    """

    def __init__(
        self,
        *,
        create_experiment: Callable[[str, RemoteExperiment], RemoteExperiment],
        next_trial: Callable[[str], TrialAssignments],
        report_trial: Callable[[str, TrialValues], None],
        get_experiment: Callable[[str], RemoteExperiment] | None = None,
        create_trial: Callable[[RemoteExperiment, TrialAssignments], object] | None = None,
        locks: RecordLocks | None = None,
        timeout: float | None = None,
    ):
        self._create_experiment = create_experiment
        self._next_trial = next_trial
        self._report_trial = report_trial
        self._get_experiment = get_experiment
        self._create_trial = create_trial
        self.locks = locks if locks is not None else RecordLocks()
        self.timeout = timeout

    def sync_experiment(self, experiment: Experiment) -> RemoteExperiment:
        with self.locks.hold(experiment, timeout=self.timeout):
            url = experiment.annotations.get(ANNOTATION_EXPERIMENT_URL)
            if url and self._get_experiment is not None:
                remote = self._get_experiment(url)
                check_definition(experiment, remote)
                to_local(experiment, remote)
                _log.info(
                    "Experiment %s already exists remotely",
                    experiment.name,
                    extra=context(experiment=experiment.name),
                )
                return remote

            name, record, baseline = to_remote(experiment)
            remote = self._create_experiment(name, record)
            check_definition(experiment, remote)
            if baseline is not None and self._create_trial is not None:
                self._create_trial(remote, baseline)
            to_local(experiment, remote)
            _log.info(
                "Created remote experiment %s with %d parameter(s)",
                name,
                len(record.parameters),
                extra=context(experiment=experiment.name),
            )
            return remote

    def next_trial(self, experiment: Experiment, trial: Trial) -> Trial | None:
        """Fill ``trial`` from the next suggestion; None when the experiment stopped."""
        with self.locks.hold(experiment, timeout=self.timeout):
            url = experiment.annotations.get(ANNOTATION_NEXT_TRIAL_URL)
            if not url:
                raise DataShapeError(f"experiment '{experiment.name}' has no next trial URL")
            try:
                suggestion = self._next_trial(url)
            except RemoteError as exc:
                if stop_experiment(experiment, exc):
                    _log.info(
                        "Experiment %s was stopped remotely",
                        experiment.name,
                        extra=context(experiment=experiment.name),
                    )
                    return None
                raise
            with self.locks.hold(trial, timeout=self.timeout):
                # Filled on a copy; the trial only changes once rendering succeeds.
                candidate = deepcopy(trial)
                apply_assignment(candidate, suggestion)
                complete_assignments(experiment, candidate)
                candidate.patch_operations = render_patches(experiment, candidate)
                update_status(candidate)
                for field in fields(trial):
                    setattr(trial, field.name, getattr(candidate, field.name))
            _log.info(
                "Trial %s assigned: %s",
                trial.name,
                trial.assignments_summary,
                extra=context(experiment=experiment.name, trial=trial.name),
            )
            return trial

    def report_trial(self, trial: Trial) -> TrialValues:
        with self.locks.hold(trial, timeout=self.timeout):
            url = trial.annotations.get(ANNOTATION_REPORT_TRIAL_URL)
            if not url:
                raise DataShapeError(f"trial '{trial.name}' has no report URL")
            values = to_remote_values(trial)
            self._report_trial(url, values)
            if SERVER_FINALIZER in trial.finalizers:
                trial.finalizers.remove(SERVER_FINALIZER)
            _log.info(
                "Reported trial %s (%s)",
                trial.name,
                "failed" if values.failed else f"{len(values.values)} value(s)",
                extra=context(experiment=trial.experiment, trial=trial.name),
            )
            return values
