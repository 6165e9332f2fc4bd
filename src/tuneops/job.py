"""Construction of the run-to-completion job executing one trial."""

from __future__ import annotations

import json
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

from tuneops._logging import get_logger
from tuneops.merge import strategic_merge
from tuneops.models import (
    LABEL_EXPERIMENT,
    LABEL_TRIAL,
    LABEL_TRIAL_ROLE,
    PATCH_STRATEGIC,
    PatchError,
    Trial,
)
from tuneops.patching import patch_data
from tuneops.trial import JOB_API_VERSION, JOB_KIND, is_trial_job_reference
from tuneops.utils import env_var_name, format_duration

_log = get_logger("job")

TRIAL_ROLE_RUN = "trialRun"
DEFAULT_CONTAINER_NAME = "default-trial-run"
DEFAULT_CONTAINER_IMAGE = "busybox"
DEFAULT_RUNTIME_SEC = 120.0


@dataclass(frozen=True)
class JobBuild:
    """The best available job plus the reason a self patch was not applied."""

    job: dict[str, Any]
    self_patch_error: str | None = None


def _mapping(parent: dict[str, Any], key: str) -> dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def _add_label(metadata: dict[str, Any], key: str, value: str) -> None:
    _mapping(metadata, "labels")[key] = value


def _assignment_env(trial: Trial, env: list[Any]) -> list[Any]:
    existing = {e.get("name") for e in env if isinstance(e, dict)}
    out = list(env)
    for assignment in trial.assignments:
        name = env_var_name(assignment.name)
        if name in existing:
            continue
        out.append({"name": name, "value": str(assignment.value)})
        existing.add(name)
    return out


def _default_container(trial: Trial) -> dict[str, Any]:
    runtime = trial.approximate_runtime_sec or DEFAULT_RUNTIME_SEC
    if trial.start_time_offset_sec:
        runtime += trial.start_time_offset_sec
    script = (
        f"echo 'Sleeping for {format_duration(runtime)}...' "
        f"&& sleep {runtime:.0f} && echo 'Done.'"
    )
    return {
        "name": DEFAULT_CONTAINER_NAME,
        "image": DEFAULT_CONTAINER_IMAGE,
        "command": ["/bin/sh"],
        "args": ["-c", script],
    }


def _patch_self(trial: Trial, job: dict[str, Any]) -> JobBuild:
    error: str | None = None
    for operation in trial.patch_operations:
        if operation.patch_type != PATCH_STRATEGIC:
            continue
        if not is_trial_job_reference(trial, operation.target_ref):
            continue
        # Only replace the job when serialization, merge and reload all succeed.
        try:
            original = json.loads(json.dumps(job))
            patched = strategic_merge(original, patch_data(operation))
            return JobBuild(job=json.loads(json.dumps(patched)))
        except (PatchError, TypeError, ValueError) as exc:
            error = str(exc)
    return JobBuild(job=job, self_patch_error=error)


def build_job(trial: Trial) -> JobBuild:
    job: dict[str, Any]
    if trial.job_template is not None:
        template = deepcopy(trial.job_template)
        job = {
            "apiVersion": JOB_API_VERSION,
            "kind": JOB_KIND,
            "metadata": dict(template.get("metadata") or {}),
            "spec": dict(template.get("spec") or {}),
        }
    else:
        job = {"apiVersion": JOB_API_VERSION, "kind": JOB_KIND, "metadata": {}, "spec": {}}
        _add_label(job["metadata"], LABEL_EXPERIMENT, trial.experiment)
        pod_template = _mapping(job["spec"], "template")
        _add_label(_mapping(pod_template, "metadata"), LABEL_EXPERIMENT, trial.experiment)

    metadata = job["metadata"]
    spec = job["spec"]
    pod_template = _mapping(spec, "template")
    pod_metadata = _mapping(pod_template, "metadata")
    pod_spec = _mapping(pod_template, "spec")

    for target in (metadata, pod_metadata):
        _add_label(target, LABEL_TRIAL, trial.name)
        _add_label(target, LABEL_TRIAL_ROLE, TRIAL_ROLE_RUN)

    metadata["namespace"] = trial.namespace
    if not metadata.get("name"):
        metadata["name"] = trial.name

    if not pod_spec.get("restartPolicy"):
        pod_spec["restartPolicy"] = "Never"
    if spec.get("backoffLimit") is None:
        spec["backoffLimit"] = 0

    containers = pod_spec.get("containers") or []
    for container in containers:
        if isinstance(container, dict):
            container["env"] = _assignment_env(trial, container.get("env") or [])
    if not containers:
        containers = [_default_container(trial)]
    pod_spec["containers"] = containers

    return _patch_self(trial, job)


def new_job(trial: Trial) -> dict[str, Any]:
    """Build the trial job, falling back to the unpatched job on self patch errors."""
    result = build_job(trial)
    if result.self_patch_error is not None:
        _log.warning(
            "Ignoring self patch for trial %s: %s", trial.name, result.self_patch_error
        )
    return result.job
