from __future__ import annotations

import logging
from copy import deepcopy

import pytest

from tuneops.generator import generate
from tuneops.models import (
    ANNOTATION_EXPERIMENT_URL,
    ANNOTATION_NEXT_TRIAL_URL,
    ANNOTATION_REPORT_TRIAL_URL,
    SERVER_FINALIZER,
    Condition,
    Constraint,
    DataShapeError,
    Experiment,
    IncompatibleDefinitionError,
    Metric,
    OrderConstraint,
    Parameter,
    RecordBusyError,
    SumConstraint,
    SumConstraintParameter,
    Trial,
    TrialValue,
)
from tuneops.remote import (
    Bounds,
    ExperimentStoppedError,
    RemoteAssignment,
    RemoteError,
    RemoteExperiment,
    RemoteMetric,
    RemoteParameter,
    RemoteSumParameter,
    TrialAssignments,
    TrialValues,
)
from tuneops.sync import (
    INT32_MAX,
    RecordLocks,
    Synchronizer,
    apply_assignment,
    fail_experiment,
    stop_experiment,
    to_local,
    to_remote,
    to_remote_values,
)
from tuneops.trial import new_trial
from tuneops.validation import check_definition

BASE_URL = "https://optimize.example/experiments/web"


def _experiment() -> Experiment:
    return Experiment(
        name="web",
        namespace="tuning",
        labels={"tuneops.dev/team": "perf", "app": "web"},
        parameters=[
            Parameter(name="replicas", min=1, max=5, baseline=2),
            Parameter(name="pinned", min=3, max=3),
            Parameter(name="mode", values=("fast", "safe"), baseline="safe"),
        ],
        constraints=[
            Constraint(name="order", order=OrderConstraint("replicas", "pinned")),
            Constraint(
                name="budget",
                sum=SumConstraint(
                    bound="1500m",
                    is_upper_bound=True,
                    parameters=(
                        SumConstraintParameter("replicas", "1"),
                        SumConstraintParameter("pinned", "0"),
                        SumConstraintParameter("mode", "500m"),
                    ),
                ),
            ),
        ],
        metrics=[Metric(name="cost"), Metric(name="throughput", minimize=False)],
    )


def _deployment() -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "namespace": "tuning"},
        "spec": {
            "replicas": 2,
            "template": {
                "spec": {
                    "containers": [
                        {
                            "name": "app",
                            "resources": {"limits": {"cpu": "500m", "memory": "256Mi"}},
                        }
                    ]
                }
            },
        },
    }


def test_to_remote_converts_parameters_constraints_and_baseline() -> None:
    name, remote, baseline = to_remote(_experiment())
    assert name == "web"
    assert remote.labels == {"team": "perf", "app": "web"}
    assert remote.parameters == [
        RemoteParameter(name="replicas", type="int", bounds=Bounds(min="1", max="5")),
        RemoteParameter(name="mode", type="categorical", values=("fast", "safe")),
    ]
    order, budget = remote.constraints
    assert (order.lower_parameter, order.upper_parameter) == ("replicas", "pinned")
    assert budget.bound == 1.5
    assert budget.is_upper_bound is True
    assert budget.parameters == (
        RemoteSumParameter("replicas", 1.0),
        RemoteSumParameter("mode", 0.5),
    )
    assert [(m.name, m.minimize) for m in remote.metrics] == [
        ("cost", True),
        ("throughput", False),
    ]
    assert baseline is not None
    assert baseline.labels == {"baseline": "true"}
    assert [(a.parameter_name, a.value) for a in baseline.assignments] == [
        ("replicas", 2),
        ("mode", "safe"),
    ]


def test_to_remote_without_baselines_has_no_baseline_trial() -> None:
    experiment = Experiment(name="web", parameters=[Parameter(name="a", min=1, max=2)])
    assert to_remote(experiment)[2] is None


def test_partial_baseline_is_rejected() -> None:
    experiment = Experiment(
        name="web",
        parameters=[Parameter(name="a", min=1, max=2, baseline=1), Parameter(name="b", min=1, max=2)],
    )
    with pytest.raises(DataShapeError, match="all or none"):
        to_remote(experiment)


def test_out_of_range_baseline_is_rejected() -> None:
    experiment = Experiment(name="web", parameters=[Parameter(name="x", min=1, max=3, baseline=5)])
    with pytest.raises(DataShapeError, match="baseline out of range for parameter 'x'"):
        to_remote(experiment)
    experiment = Experiment(
        name="web", parameters=[Parameter(name="m", values=("a",), baseline="b")]
    )
    with pytest.raises(DataShapeError, match="baseline out of range for parameter 'm'"):
        to_remote(experiment)


def test_to_local_records_urls_optimization_and_finalizer() -> None:
    experiment = _experiment()
    remote = RemoteExperiment(
        optimization=[("experimentBudget", "20")],
        self_url=BASE_URL,
        next_trial_url=f"{BASE_URL}/trials/next",
    )
    to_local(experiment, remote)
    to_local(experiment, remote)
    assert experiment.annotations[ANNOTATION_EXPERIMENT_URL] == BASE_URL
    assert experiment.annotations[ANNOTATION_NEXT_TRIAL_URL] == f"{BASE_URL}/trials/next"
    assert [(o.name, o.value) for o in experiment.optimization] == [("experimentBudget", "20")]
    assert experiment.finalizers == [SERVER_FINALIZER]


def test_apply_assignment_names_the_trial_and_updates_labels() -> None:
    trial = Trial(generate_name="web-", labels={"drop": "old", "stay": "yes"})
    apply_assignment(
        trial,
        TrialAssignments(
            labels={"drop": "", "added": "1"},
            assignments=[RemoteAssignment("replicas", 3), RemoteAssignment("mode", "fast")],
            self_url=f"{BASE_URL}/trials/7",
        ),
    )
    assert trial.name == "web-007"
    assert trial.annotations[ANNOTATION_REPORT_TRIAL_URL] == f"{BASE_URL}/trials/7"
    assert trial.assignment_map() == {"replicas": 3, "mode": "fast"}
    assert trial.labels == {"stay": "yes", "added": "1"}
    assert trial.finalizers == [SERVER_FINALIZER]
    assert trial.phase == "Created"

    other = Trial(generate_name="web-")
    apply_assignment(other, TrialAssignments(self_url=f"{BASE_URL}/trials/abc/"))
    assert other.name == "web-abc"


def test_oversized_assignments_are_clamped(caplog: pytest.LogCaptureFixture) -> None:
    trial = Trial(name="web-001")
    with caplog.at_level(logging.WARNING, logger="tuneops.sync"):
        apply_assignment(
            trial,
            TrialAssignments(assignments=[RemoteAssignment("memory", 5_000_000_000)]),
        )
    assert trial.assignment_map() == {"memory": INT32_MAX}
    assert "Clamped assignment memory=5000000000" in caplog.text


def test_remote_values_for_completed_and_failed_trials() -> None:
    trial = Trial(
        name="web-001",
        start_time="2024-01-01T00:00:00Z",
        completion_time="2024-01-01T00:02:00Z",
        values=[
            TrialValue("cost", "12.5", "0.5"),
            TrialValue("throughput", "900"),
            TrialValue("broken", "n/a"),
        ],
    )
    values = to_remote_values(trial)
    assert values.to_json() == {
        "startTime": "2024-01-01T00:00:00Z",
        "completionTime": "2024-01-01T00:02:00Z",
        "values": [
            {"metricName": "cost", "value": 12.5, "error": 0.5},
            {"metricName": "throughput", "value": 900.0},
        ],
    }

    trial.conditions.append(Condition("Failed", "True", "JobFailed", "exit code 1"))
    failed = to_remote_values(trial)
    assert failed.failed is True
    assert failed.values == []
    assert failed.to_json()["failureReason"] == "JobFailed"
    assert "values" not in failed.to_json()
    assert TrialValues.from_json(failed.to_json()) == failed


def test_stop_and_fail_experiment() -> None:
    experiment = _experiment()
    experiment.annotations[ANNOTATION_NEXT_TRIAL_URL] = f"{BASE_URL}/trials/next"
    assert not stop_experiment(experiment, RemoteError("boom", error_type="unknown"))
    assert experiment.replicas is None
    assert stop_experiment(experiment, ExperimentStoppedError())
    assert experiment.replicas == 0
    assert ANNOTATION_NEXT_TRIAL_URL not in experiment.annotations

    assert fail_experiment(experiment, "SyncFailed", RuntimeError("unreachable"))
    (condition,) = experiment.conditions
    assert (condition.type, condition.status, condition.reason, condition.message) == (
        "Failed",
        "True",
        "SyncFailed",
        "unreachable",
    )


def test_check_definition_compares_name_sets() -> None:
    experiment = _experiment()
    matching = RemoteExperiment(
        parameters=[RemoteParameter("mode", "categorical"), RemoteParameter("replicas", "int")],
        metrics=[RemoteMetric("throughput"), RemoteMetric("cost")],
    )
    check_definition(experiment, matching)

    renamed = RemoteExperiment(
        parameters=[RemoteParameter("replicas", "int"), RemoteParameter("other", "int")],
        metrics=matching.metrics,
    )
    with pytest.raises(IncompatibleDefinitionError, match=r"only local: \['mode'\]"):
        check_definition(experiment, renamed)

    duplicated = RemoteExperiment(
        parameters=[
            RemoteParameter("replicas", "int"),
            RemoteParameter("mode", "categorical"),
            RemoteParameter("mode", "categorical"),
        ],
        metrics=matching.metrics,
    )
    with pytest.raises(IncompatibleDefinitionError, match="duplicate remote names"):
        check_definition(experiment, duplicated)

    fewer_metrics = RemoteExperiment(parameters=matching.parameters, metrics=[RemoteMetric("cost")])
    with pytest.raises(IncompatibleDefinitionError, match="metric definitions"):
        check_definition(experiment, fewer_metrics)


def test_record_locks_are_exclusive_and_released() -> None:
    locks = RecordLocks()
    experiment = _experiment()
    with locks.hold(experiment):
        assert locks.is_held(experiment)
        with pytest.raises(RecordBusyError, match="Experiment tuning/web"):
            with locks.hold(experiment, timeout=0.01):
                pass
        with locks.hold(Trial(name="web-001", namespace="tuning"), timeout=0.01):
            pass
    assert not locks.is_held(experiment)
    assert len(locks) == 0


def test_record_locks_forget_released_records() -> None:
    locks = RecordLocks()
    trial = Trial(generate_name="web-", namespace="tuning")
    with locks.hold(trial):
        assert len(locks) == 1
        trial.name = "web-007"
        assert not locks.is_held(trial)
    assert len(locks) == 0
    with pytest.raises(RecordBusyError):
        with locks.hold(trial):
            with locks.hold(trial, timeout=0.01):
                pass
    assert len(locks) == 0


class _FakeService:
    def __init__(self) -> None:
        self.created: list[tuple[str, RemoteExperiment]] = []
        self.baselines: list[TrialAssignments] = []
        self.reports: list[tuple[str, TrialValues]] = []
        self.next_calls = 0
        self.next_error: Exception | None = None
        self.suggestion: TrialAssignments | None = None

    def create_experiment(self, name: str, record: RemoteExperiment) -> RemoteExperiment:
        self.created.append((name, record))
        return RemoteExperiment(
            parameters=list(record.parameters),
            metrics=list(record.metrics),
            optimization=[("experimentBudget", "10")],
            self_url=BASE_URL,
            next_trial_url=f"{BASE_URL}/trials/next",
        )

    def create_trial(self, remote: RemoteExperiment, baseline: TrialAssignments) -> None:
        self.baselines.append(baseline)

    def next_trial(self, url: str) -> TrialAssignments:
        self.next_calls += 1
        if self.next_error is not None:
            raise self.next_error
        if self.suggestion is not None:
            return self.suggestion
        return TrialAssignments(
            assignments=[
                RemoteAssignment("replicas", 3),
                RemoteAssignment("cpu", 750),
                RemoteAssignment("memory", 512),
            ],
            self_url=f"{BASE_URL}/trials/12",
        )

    def report_trial(self, url: str, values: TrialValues) -> None:
        self.reports.append((url, values))

    def synchronizer(self) -> Synchronizer:
        return Synchronizer(
            create_experiment=self.create_experiment,
            next_trial=self.next_trial,
            report_trial=self.report_trial,
            create_trial=self.create_trial,
            timeout=1.0,
        )


def test_synchronizer_runs_one_trial_end_to_end(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="tuneops")
    service = _FakeService()
    sync = service.synchronizer()
    experiment = generate([_deployment()], name="web").experiment

    sync.sync_experiment(experiment)
    ((name, record),) = service.created
    assert name == "web"
    assert [p.name for p in record.parameters] == ["replicas", "cpu", "memory"]
    assert [(a.parameter_name, a.value) for a in service.baselines[0].assignments] == [
        ("replicas", 2),
        ("cpu", 500),
        ("memory", 256),
    ]
    assert experiment.annotations[ANNOTATION_EXPERIMENT_URL] == BASE_URL

    trial = sync.next_trial(experiment, new_trial(experiment))
    assert trial is not None
    assert trial.name == "web-012"
    assert trial.phase == "Created"
    (operation,) = trial.patch_operations
    assert str(operation.target_ref) == "Deployment.apps/tuning/web"
    assert '"cpu":"750m"' in operation.data
    assert not sync.locks.is_held(experiment)
    (assigned,) = [r for r in caplog.records if r.getMessage().startswith("Trial web-012")]
    assert (assigned.experiment, assigned.trial) == ("web", "web-012")

    trial.values = [TrialValue("cost", "4.2")]
    values = sync.report_trial(trial)
    assert service.reports == [(f"{BASE_URL}/trials/12", values)]
    assert SERVER_FINALIZER not in trial.finalizers


def test_synchronizer_pauses_stopped_experiments_without_retrying() -> None:
    service = _FakeService()
    sync = service.synchronizer()
    experiment = generate([_deployment()], name="web").experiment
    sync.sync_experiment(experiment)

    service.next_error = ExperimentStoppedError()
    assert sync.next_trial(experiment, new_trial(experiment)) is None
    assert experiment.replicas == 0
    assert service.next_calls == 1

    experiment.annotations[ANNOTATION_NEXT_TRIAL_URL] = f"{BASE_URL}/trials/next"
    service.next_error = RemoteError("server error", error_type="internal")
    with pytest.raises(RemoteError, match="server error"):
        sync.next_trial(experiment, new_trial(experiment))
    assert service.next_calls == 2
    assert not sync.locks.is_held(experiment)


def test_synchronizer_requires_urls() -> None:
    sync = _FakeService().synchronizer()
    with pytest.raises(DataShapeError, match="no next trial URL"):
        sync.next_trial(Experiment(name="web"), Trial(name="web-001"))
    with pytest.raises(DataShapeError, match="no report URL"):
        sync.report_trial(Trial(name="web-001"))


def test_synchronizer_checks_existing_remote_definitions() -> None:
    service = _FakeService()
    experiment = generate([_deployment()], name="web").experiment
    experiment.annotations[ANNOTATION_EXPERIMENT_URL] = BASE_URL
    sync = Synchronizer(
        create_experiment=service.create_experiment,
        next_trial=service.next_trial,
        report_trial=service.report_trial,
        get_experiment=lambda url: RemoteExperiment(
            parameters=[RemoteParameter("replicas", "int")], self_url=url
        ),
    )
    with pytest.raises(IncompatibleDefinitionError, match=r"only local: \['cpu', 'memory'\]"):
        sync.sync_experiment(experiment)
    assert service.created == []


def test_incomplete_suggestion_leaves_the_trial_untouched() -> None:
    service = _FakeService()
    sync = service.synchronizer()
    experiment = generate([_deployment()], name="web").experiment
    sync.sync_experiment(experiment)

    service.suggestion = TrialAssignments(
        assignments=[RemoteAssignment("replicas", 3)], self_url=f"{BASE_URL}/trials/7"
    )
    trial = new_trial(experiment)
    before = deepcopy(trial)
    with pytest.raises(DataShapeError, match=r"missing parameters: \['cpu', 'memory'\]"):
        sync.next_trial(experiment, trial)
    assert trial == before
    assert (trial.name, trial.assignments, trial.phase) == ("", [], "")
    assert SERVER_FINALIZER not in trial.finalizers
    assert len(sync.locks) == 0
