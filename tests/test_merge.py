from __future__ import annotations

import pytest

from tuneops.merge import json_merge, strategic_merge
from tuneops.models import PatchError


def _pod_spec() -> dict:
    return {
        "containers": [
            {
                "name": "app",
                "image": "nginx",
                "args": ["--port", "80"],
                "env": [{"name": "A", "value": "1"}, {"name": "B", "value": "2"}],
            },
            {"name": "sidecar", "image": "envoy"},
        ]
    }


def test_containers_and_env_merge_by_name() -> None:
    patched = strategic_merge(
        _pod_spec(),
        {
            "containers": [
                {"name": "app", "env": [{"name": "B", "value": "3"}, {"name": "C", "value": "4"}]}
            ]
        },
    )
    app, sidecar = patched["containers"]
    assert app["image"] == "nginx"
    assert app["env"] == [
        {"name": "A", "value": "1"},
        {"name": "B", "value": "3"},
        {"name": "C", "value": "4"},
    ]
    assert sidecar == {"name": "sidecar", "image": "envoy"}


def test_lists_without_merge_key_are_replaced() -> None:
    patched = strategic_merge(
        _pod_spec(), {"containers": [{"name": "app", "args": ["--port", "8080"]}]}
    )
    assert patched["containers"][0]["args"] == ["--port", "8080"]


def test_null_and_delete_directives_remove_content() -> None:
    patched = strategic_merge(
        _pod_spec(),
        {
            "containers": [
                {"name": "sidecar", "$patch": "delete"},
                {"name": "app", "image": None},
            ]
        },
    )
    assert patched["containers"] == [
        {
            "name": "app",
            "args": ["--port", "80"],
            "env": [{"name": "A", "value": "1"}, {"name": "B", "value": "2"}],
        }
    ]


def test_replace_directive_on_map() -> None:
    original = {"metadata": {"labels": {"a": "1", "b": "2"}}}
    patched = strategic_merge(
        original, {"metadata": {"labels": {"$patch": "replace", "c": "3"}}}
    )
    assert patched == {"metadata": {"labels": {"c": "3"}}}
    assert original == {"metadata": {"labels": {"a": "1", "b": "2"}}}


def test_ports_merge_by_container_port() -> None:
    patched = strategic_merge(
        {"ports": [{"containerPort": 80, "name": "http"}]},
        {"ports": [{"containerPort": 80, "protocol": "TCP"}, {"containerPort": 443}]},
    )
    assert patched["ports"] == [
        {"containerPort": 80, "name": "http", "protocol": "TCP"},
        {"containerPort": 443},
    ]


def test_bad_directives_and_missing_merge_keys_fail() -> None:
    with pytest.raises(PatchError, match="unsupported patch directive"):
        strategic_merge({}, {"spec": {"$patch": "explode"}})
    with pytest.raises(PatchError, match="merge key 'name'"):
        strategic_merge(_pod_spec(), {"containers": [{"name": "app"}, {"image": "x"}]})


def test_json_merge_follows_merge_patch_rules() -> None:
    assert json_merge(
        {"a": "b", "c": {"d": "e", "f": "g"}, "list": [1, 2]},
        {"a": "z", "c": {"f": None}, "list": [3]},
    ) == {"a": "z", "c": {"d": "e"}, "list": [3]}
    assert json_merge({"a": 1}, ["x"]) == ["x"]
