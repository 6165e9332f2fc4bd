from __future__ import annotations

import pytest

from tuneops.fieldpath import split_path
from tuneops.models import ConfigError, TargetRef
from tuneops.naming import ParameterNamer, build_name_table, field_discriminator
from tuneops.selectors import ContainerResourcesField, EnvVarField


def _deployment(name: str, kind: str = "Deployment") -> TargetRef:
    return TargetRef(api_version="apps/v1", kind=kind, name=name, namespace="default")


def _resources(ref: TargetRef, container: str) -> ContainerResourcesField:
    return ContainerResourcesField(
        target_ref=ref,
        field_path=split_path(f"/spec/template/spec/containers/[name={container}]/resources"),
        value=None,
    )


def _names(fields: list[ContainerResourcesField]) -> list[str]:
    namer = ParameterNamer.from_fields(fields)
    out: list[str] = []
    for f in fields:
        out.append(namer(f.target_ref, f.field_path, "cpu"))
        out.append(namer(f.target_ref, f.field_path, "memory"))
    return out


def test_one_resource_one_container_keeps_base_names() -> None:
    assert _names([_resources(_deployment("test"), "test")]) == ["cpu", "memory"]


def test_one_resource_two_containers_uses_container_names() -> None:
    ref = _deployment("test")
    names = _names([_resources(ref, "test1"), _resources(ref, "test2")])
    assert names == ["test1_cpu", "test1_memory", "test2_cpu", "test2_memory"]


def test_two_resources_one_container_each_uses_resource_names() -> None:
    names = _names(
        [
            _resources(_deployment("test1"), "test"),
            _resources(_deployment("test2"), "test"),
        ]
    )
    assert names == ["test1_cpu", "test1_memory", "test2_cpu", "test2_memory"]


def test_resource_prefix_is_outermost_when_both_levels_apply() -> None:
    first = _deployment("test1")
    names = _names(
        [
            _resources(first, "test1"),
            _resources(first, "test2"),
            _resources(_deployment("test2"), "test"),
        ]
    )
    assert names == [
        "test1_test1_cpu",
        "test1_test1_memory",
        "test1_test2_cpu",
        "test1_test2_memory",
        "test2_cpu",
        "test2_memory",
    ]


def test_names_do_not_depend_on_field_order() -> None:
    fields = [
        _resources(_deployment("a"), "x"),
        _resources(_deployment("a"), "y"),
        _resources(_deployment("b"), "x"),
    ]
    assert build_name_table(fields) == build_name_table(list(reversed(fields)))


def test_same_name_different_kind_escalates_to_kind_token() -> None:
    names = _names(
        [
            _resources(_deployment("web"), "app"),
            _resources(_deployment("web", kind="StatefulSet"), "app"),
        ]
    )
    assert names == [
        "deployment_web_cpu",
        "deployment_web_memory",
        "statefulset_web_cpu",
        "statefulset_web_memory",
    ]


def test_names_are_unique_for_crowded_inputs() -> None:
    fields = []
    for resource in ("api", "worker", "api-v2", "api_v2"):
        for namespace in ("prod", "staging"):
            ref = TargetRef("apps/v1", "Deployment", resource, namespace)
            for container in ("main", "sidecar", "side-car"):
                fields.append(_resources(ref, container))
    names = _names(fields)
    assert len(names) == len(set(names))


def test_env_fields_fall_back_to_container_discriminator() -> None:
    ref = _deployment("web")
    fields = [
        EnvVarField(
            target_ref=ref,
            field_path=split_path(
                f"/spec/template/spec/containers/[name={c}]/env/[name=MODE]/value"
            ),
            variable="MODE",
            value="fast",
            values=("fast", "slow"),
        )
        for c in ("app", "worker")
    ]
    namer = ParameterNamer.from_fields(fields)
    assert namer.names() == ["app_mode", "worker_mode"]


def test_field_discriminator_walks_filters_outward() -> None:
    path = split_path("/spec/containers/[name=app]/env/[name=MODE]/value")
    assert field_discriminator(path) == "MODE"
    assert field_discriminator(path, 1) == "app"
    assert field_discriminator(path, 2) is None


def test_unregistered_lookup_is_a_configuration_error() -> None:
    namer = ParameterNamer.from_fields([_resources(_deployment("test"), "test")])
    with pytest.raises(ConfigError, match="no parameter name registered"):
        namer(_deployment("other"), ("spec", "replicas"), "replicas")
