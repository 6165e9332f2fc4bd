from __future__ import annotations

from copy import deepcopy
from typing import Iterable

from tuneops._logging import get_logger
from tuneops.models import (
    CONDITION_TRUE,
    LABEL_EXPERIMENT,
    TRIAL_COMPLETE,
    TRIAL_FAILED,
    Assignment,
    Condition,
    Experiment,
    TargetRef,
    Trial,
)
from tuneops.utils import join_assignments, utc_now_iso

_log = get_logger("trial")

JOB_API_VERSION = "batch/v1"
JOB_KIND = "Job"


def new_trial(experiment: Experiment) -> Trial:
    """Start a trial from the experiment's trial template."""
    template = experiment.trial_template
    labels = dict(template.labels)
    labels[LABEL_EXPERIMENT] = experiment.name
    return Trial(
        generate_name=f"{experiment.name}-",
        namespace=experiment.namespace,
        experiment=experiment.name,
        labels=labels,
        annotations=dict(template.annotations),
        job_template=deepcopy(template.job_template),
        approximate_runtime_sec=template.approximate_runtime_sec,
        start_time_offset_sec=template.start_time_offset_sec,
    )


def job_reference(trial: Trial) -> TargetRef:
    return TargetRef(
        api_version=JOB_API_VERSION,
        kind=JOB_KIND,
        name=trial.name,
        namespace=trial.namespace,
    )


def is_trial_job_reference(trial: Trial, ref: TargetRef) -> bool:
    """True when ``ref`` points at the (possibly not yet created) job of ``trial``."""
    return (
        ref.kind == JOB_KIND
        and ref.api_version == JOB_API_VERSION
        and ref.name == trial.name
        and (not ref.namespace or ref.namespace == trial.namespace)
    )


def apply_condition(
    conditions: list[Condition],
    condition_type: str,
    status: str,
    reason: str = "",
    message: str = "",
    *,
    now: str | None = None,
) -> Condition:
    """Set a condition in place; the transition time only moves when the status changes."""
    timestamp = now or utc_now_iso()
    for condition in conditions:
        if condition.type != condition_type:
            continue
        if condition.status != status:
            condition.status = status
            condition.last_transition_time = timestamp
        condition.reason = reason
        condition.message = message
        return condition
    condition = Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=timestamp,
    )
    conditions.append(condition)
    return condition


def _has_condition(conditions: Iterable[Condition], condition_type: str) -> bool:
    return any(
        c.type == condition_type and c.status == CONDITION_TRUE for c in conditions
    )


def is_failed(trial: Trial) -> bool:
    return _has_condition(trial.conditions, TRIAL_FAILED)


def is_finished(trial: Trial) -> bool:
    return is_failed(trial) or _has_condition(trial.conditions, TRIAL_COMPLETE)


def trial_phase(trial: Trial) -> str:
    if is_failed(trial):
        return "Failed"
    if is_finished(trial):
        return "Completed"
    if trial.start_time:
        return "Running"
    if trial.assignments:
        return "Created"
    return "Pending"


def assignments_summary(trial: Trial) -> str:
    return join_assignments((a.name, a.value) for a in trial.assignments)


def values_summary(trial: Trial) -> str:
    return join_assignments((v.name, v.value) for v in trial.values)


def update_status(trial: Trial) -> None:
    """Refresh the phase and the human readable assignment/value summaries."""
    trial.phase = trial_phase(trial)
    trial.assignments_summary = assignments_summary(trial)
    trial.values_summary = values_summary(trial)


def complete_assignments(experiment: Experiment, trial: Trial) -> list[str]:
    """Assign constant parameters, which are never sent for suggestion, their value."""
    assigned = {a.name for a in trial.assignments}
    added = []
    for parameter in experiment.parameters:
        if parameter.name in assigned or not parameter.is_degenerate:
            continue
        trial.assignments.append(Assignment(name=parameter.name, value=parameter.min))
        added.append(parameter.name)
    if added:
        _log.debug("Filled constant parameters %s for trial %s", added, trial.name)
    return added
