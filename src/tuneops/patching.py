"""Patch templates: generation-time fragments and trial-time rendering."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError, UndefinedError

from tuneops._logging import get_logger
from tuneops.merge import json_merge, strategic_merge
from tuneops.models import (
    PATCH_MERGE,
    PATCH_STRATEGIC,
    PATCH_TYPES,
    DataShapeError,
    Experiment,
    PatchError,
    PatchOperation,
    PatchTemplate,
    TargetRef,
    Trial,
)
from tuneops.resources import Resource
from tuneops.trial import job_reference
from tuneops.utils import stable_json

_log = get_logger("patching")

_JINJA = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


class IntPlaceholder(str):
    """A placeholder whose rendered value must stay an integer."""


def placeholder(name: str) -> str:
    # Subscript lookup so names like "keys" never resolve to dict methods.
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return '{{ values["%s"] }}' % escaped


def int_placeholder(name: str) -> IntPlaceholder:
    return IntPlaceholder(placeholder(name))


class _TemplateDumper(yaml.SafeDumper):
    pass


class _TemplateLoader(yaml.SafeLoader):
    pass


def _represent_int_placeholder(dumper: yaml.SafeDumper, data: IntPlaceholder) -> Any:
    return dumper.represent_scalar("tag:yaml.org,2002:int", str(data), style="'")


def _construct_int(loader: yaml.SafeLoader, node: yaml.ScalarNode) -> Any:
    text = loader.construct_scalar(node)
    if "{" in text:
        return IntPlaceholder(text)
    return loader.construct_yaml_int(node)


_TemplateDumper.add_representer(IntPlaceholder, _represent_int_placeholder)
_TemplateLoader.add_constructor("tag:yaml.org,2002:int", _construct_int)


@dataclass(frozen=True)
class PatchFragment:
    """A structural edit scoped to one target resource."""

    target_ref: TargetRef
    data: dict[str, Any]


def dump_template(data: Mapping[str, Any]) -> str:
    return yaml.dump(
        dict(data),
        Dumper=_TemplateDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=False,
        indent=2,
        width=1 << 16,  # placeholders must never be folded
    )


def build_templates(fragments: Iterable[PatchFragment]) -> list[PatchTemplate]:
    """Group fragments by target reference into one strategic merge template each."""
    grouped: dict[TargetRef, dict[str, Any]] = {}
    for frag in fragments:
        if frag.target_ref in grouped:
            grouped[frag.target_ref] = strategic_merge(grouped[frag.target_ref], frag.data)
        else:
            grouped[frag.target_ref] = strategic_merge({}, frag.data)
    return [
        PatchTemplate(patch=dump_template(data), target_ref=ref, patch_type=PATCH_STRATEGIC)
        for ref, data in grouped.items()
    ]


def render_template(
    template: PatchTemplate,
    assignments: Mapping[str, int | str],
    *,
    default_target: TargetRef | None = None,
) -> PatchOperation:
    """Bind ``assignments`` into ``template`` and return the concrete patch."""
    target = template.target_ref or default_target
    if target is None:
        raise PatchError("patch template has no target reference")
    if template.patch_type not in PATCH_TYPES:
        raise PatchError(
            f"patch for {target} has unsupported type '{template.patch_type}'"
        )
    try:
        tree = yaml.load(template.patch, Loader=_TemplateLoader)
    except yaml.YAMLError as exc:
        raise PatchError(f"patch for {target} is not valid YAML: {exc}") from exc
    if tree is None:
        tree = {}
    if not isinstance(tree, Mapping):
        raise PatchError(f"patch for {target} must render to a mapping")
    data = _render_node(tree, dict(assignments), target)
    return PatchOperation(
        target_ref=target, patch_type=template.patch_type, data=stable_json(data)
    )


def _render_text(text: str, values: dict[str, Any], target: TargetRef) -> str:
    try:
        return _JINJA.from_string(text).render(values=values)
    except UndefinedError as exc:
        raise PatchError(f"patch for {target}: {exc.message}") from exc
    except TemplateError as exc:
        raise PatchError(f"patch for {target} is not a valid template: {exc}") from exc


def _render_node(node: Any, values: dict[str, Any], target: TargetRef) -> Any:
    """Substitute placeholders scalar by scalar; rendered text is never re-parsed."""
    if isinstance(node, Mapping):
        return {
            _render_node(key, values, target): _render_node(value, values, target)
            for key, value in node.items()
        }
    if isinstance(node, list):
        return [_render_node(item, values, target) for item in node]
    if isinstance(node, IntPlaceholder):
        rendered = _render_text(node, values, target).strip()
        try:
            return int(rendered)
        except ValueError as exc:
            raise PatchError(f"patch for {target}: '{rendered}' is not an integer") from exc
    if isinstance(node, str):
        return _render_text(node, values, target)
    return node


def require_complete(experiment: Experiment, assignments: Mapping[str, Any]) -> None:
    missing = [p.name for p in experiment.parameters if p.name not in assignments]
    if missing:
        raise DataShapeError(
            f"trial assignments for experiment '{experiment.name}' are missing "
            f"parameters: {missing}"
        )


def render_patches(experiment: Experiment, trial: Trial) -> list[PatchOperation]:
    """Render every stored template of ``experiment`` for ``trial``."""
    assignments = trial.assignment_map()
    require_complete(experiment, assignments)
    job_ref = job_reference(trial)
    operations = [
        render_template(template, assignments, default_target=job_ref)
        for template in experiment.patches
    ]
    _log.debug(
        "Rendered %d patch(es) for trial %s", len(operations), trial.name or "<unnamed>"
    )
    return operations


def patch_data(operation: PatchOperation) -> dict[str, Any]:
    try:
        data = json.loads(operation.data)
    except json.JSONDecodeError as exc:
        raise PatchError(f"patch for {operation.target_ref} is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PatchError(f"patch for {operation.target_ref} must be a JSON object")
    return data


def apply_patch(document: Mapping[str, Any], operation: PatchOperation) -> dict[str, Any]:
    """Apply one concrete patch to a copy of ``document``."""
    data = patch_data(operation)
    if operation.patch_type == PATCH_STRATEGIC:
        return strategic_merge(document, data)
    if operation.patch_type == PATCH_MERGE:
        return json_merge(document, data)
    raise PatchError(f"unsupported patch type '{operation.patch_type}'")


def targets(ref: TargetRef, resource: Resource) -> bool:
    if ref.kind != resource.kind or ref.name != resource.name:
        return False
    if ref.group != resource.group:
        return False
    return not ref.namespace or not resource.namespace or ref.namespace == resource.namespace


def apply_patches(
    documents: Iterable[Mapping[str, Any]], operations: Iterable[PatchOperation]
) -> list[dict[str, Any]]:
    """Patch every document targeted by ``operations``; others are copied as-is."""
    ops = list(operations)
    patched: list[dict[str, Any]] = []
    for document in documents:
        resource = Resource(document)
        current = json_merge({}, document)
        for op in ops:
            if targets(op.target_ref, resource):
                current = apply_patch(current, op)
        patched.append(current)
    return patched
