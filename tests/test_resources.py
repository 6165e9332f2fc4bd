from __future__ import annotations

from decimal import Decimal

import pytest
import yaml

from tuneops.fieldpath import MISSING, fragment, lookup, set_value, split_path
from tuneops.models import ConfigError, DataShapeError
from tuneops.quantity import milli_value, parse_quantity, scaled_value
from tuneops.resources import Resource, labels_match, parse_label_selector


def _deployment() -> dict:
    return yaml.safe_load(
        """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  namespace: default
  labels:
    app: web
    tier: frontend
spec:
  replicas: 2
  template:
    spec:
      containers:
      - name: app
        image: nginx
        resources:
          limits:
            cpu: 250m
"""
    )


def test_resource_identity() -> None:
    resource = Resource(_deployment())
    assert resource.group == "apps"
    assert resource.version == "v1"
    assert str(resource.target_ref) == "Deployment.apps/default/web"
    assert resource.labels == {"app": "web", "tier": "frontend"}


def test_resource_without_name_is_rejected() -> None:
    with pytest.raises(DataShapeError, match="metadata.name"):
        Resource({"apiVersion": "v1", "kind": "Service", "metadata": {}})


def test_split_path_rejects_malformed_filters() -> None:
    assert split_path("/spec/containers/[name=web]/env") == (
        "spec",
        "containers",
        "[name=web]",
        "env",
    )
    with pytest.raises(ConfigError, match="not a filter"):
        split_path("/spec/containers/[name=web")
    with pytest.raises(ConfigError, match=r"\[key=value\]"):
        split_path("/spec/containers/[=web]")
    with pytest.raises(ConfigError, match="empty segment"):
        split_path("/spec//replicas")


def test_lookup_follows_filters_and_reports_missing() -> None:
    doc = _deployment()
    assert lookup(doc, "/spec/template/spec/containers/[name=app]/image") == "nginx"
    assert lookup(doc, "/spec/template/spec/containers/[name=db]/image") is MISSING
    assert lookup(doc, "/spec/strategy/type") is MISSING
    with pytest.raises(DataShapeError, match="expected a list"):
        lookup(doc, "/spec/replicas/[name=x]")


def test_lookup_create_synthesizes_missing_fields() -> None:
    doc = _deployment()
    assert lookup(doc, "/spec/template/spec/containers/[name=db]", create=True) == {
        "name": "db"
    }
    assert lookup(doc, "/spec/paused", create=True) is None
    assert doc["spec"]["paused"] is None
    assert [c["name"] for c in doc["spec"]["template"]["spec"]["containers"]] == [
        "app",
        "db",
    ]


def test_set_value_creates_intermediate_structure() -> None:
    doc: dict = {}
    set_value(doc, "/spec/template/spec/containers/[name=app]/image", "busybox")
    assert doc == {
        "spec": {"template": {"spec": {"containers": [{"name": "app", "image": "busybox"}]}}}
    }


def test_fragment_turns_filters_into_keyed_elements() -> None:
    assert fragment(
        "/spec/template/spec/containers/[name=web]/resources", {"limits": {"cpu": "1"}}
    ) == {
        "spec": {
            "template": {
                "spec": {
                    "containers": [{"name": "web", "resources": {"limits": {"cpu": "1"}}}]
                }
            }
        }
    }
    with pytest.raises(ConfigError, match="positional segment"):
        fragment("/spec/containers/0/image", "x")


def test_quantities() -> None:
    assert parse_quantity("500m") == Decimal("0.5")
    assert milli_value("500m") == 500
    assert milli_value("1") == 1000
    assert milli_value("0.5") == 500
    assert milli_value("1e3") == 1_000_000
    assert milli_value(2) == 2000
    assert scaled_value("2Gi", "Mi") == 2048
    assert scaled_value("256Mi", "Mi") == 256
    assert scaled_value("1G", "Mi") == 954
    with pytest.raises(DataShapeError, match="could not parse quantity"):
        parse_quantity("lots")
    with pytest.raises(DataShapeError, match="could not parse quantity"):
        parse_quantity(True)


def test_label_selector_parsing_and_matching() -> None:
    labels = {"app": "web", "tier": "frontend", "env": "prod"}
    assert labels_match(parse_label_selector("app=web,tier!=db"), labels)
    assert labels_match(parse_label_selector("env in (prod, staging),!canary"), labels)
    assert labels_match(parse_label_selector("app==web,team notin (ops)"), labels)
    assert not labels_match(parse_label_selector("team"), labels)
    assert not labels_match(parse_label_selector("env notin (prod)"), labels)
    assert parse_label_selector("") == ()


def test_label_selector_errors() -> None:
    with pytest.raises(ConfigError, match="unbalanced"):
        parse_label_selector("env in (a,b")
    with pytest.raises(ConfigError, match="invalid key"):
        parse_label_selector("=web")
    with pytest.raises(ConfigError, match="empty term"):
        parse_label_selector("app=web,,tier=db")
