"""Experiment generation from a set of resource documents.

The generator walks the resources once, evaluating every selector in
registration order. All tunable fields are collected before any name is
assigned so the namer sees the whole field set; each field then yields its
parameters and patch fragment, and fragments are grouped into one patch
template per target resource.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Sequence

from tuneops._logging import context, get_logger
from tuneops.application import Application
from tuneops.emit import dump_yaml
from tuneops.models import (
    ConfigError,
    Experiment,
    Parameter,
    PatchTemplate,
    TrialTemplate,
)
from tuneops.naming import ParameterNamer
from tuneops.patching import PatchFragment, build_templates
from tuneops.resources import Resource, as_resources
from tuneops.selectors import (
    ContainerResourcesSelector,
    GenericSelector,
    TunableField,
)
from tuneops.settings import GeneratorSettings

_log = get_logger("generator")


@dataclass(frozen=True)
class GenerationResult:
    experiment: Experiment
    parameters: tuple[Parameter, ...]
    templates: tuple[PatchTemplate, ...]

    def to_yaml(self) -> str:
        return dump_yaml(self.experiment.to_json())


def _override_labels(
    selectors: Sequence[GenericSelector], application: Application | None
) -> list[GenericSelector]:
    if application is None or not application.container_resources_labels:
        return list(selectors)
    label_selector = application.container_resources_selector
    return [
        replace(s, label_selector=label_selector)
        if isinstance(s, ContainerResourcesSelector)
        else s
        for s in selectors
    ]


class Generator:
    def __init__(
        self,
        selectors: Sequence[GenericSelector] | None = None,
        settings: GeneratorSettings | None = None,
        application: Application | None = None,
    ):
        self.settings = settings or GeneratorSettings()
        base = self.settings.selectors if selectors is None else selectors
        self.selectors = _override_labels(base, application)
        self.application = application

    def scan(self, resources: Iterable[Resource]) -> list[TunableField]:
        fields: list[TunableField] = []
        for resource in resources:
            for selector in self.selectors:
                if selector.matches(resource):
                    fields.extend(selector.fields(resource))
        return fields

    def _experiment_identity(
        self, name: str | None, namespace: str | None
    ) -> tuple[str, str]:
        app = self.application
        resolved_name = name or (app.name if app else "")
        if not resolved_name:
            raise ConfigError("experiment name is required when no application is given")
        resolved_namespace = namespace or (app.namespace if app else "") or self.settings.namespace
        return resolved_name, resolved_namespace

    def generate(
        self,
        resources: Iterable[Mapping[str, Any] | Resource],
        *,
        name: str | None = None,
        namespace: str | None = None,
    ) -> GenerationResult:
        experiment_name, experiment_namespace = self._experiment_identity(name, namespace)
        documents = as_resources(resources)
        fields = self.scan(documents)
        tunable = [f for f in fields if f.tunable]
        if len(tunable) != len(fields):
            _log.debug("Skipped %d field(s) without a usable value", len(fields) - len(tunable))

        namer = ParameterNamer.from_fields(tunable)
        parameters: list[Parameter] = []
        fragments: list[PatchFragment] = []
        for f in tunable:
            produced = f.parameters(namer)
            if not produced:
                continue
            parameters.extend(produced)
            fragments.append(f.patch(namer))

        seen: set[str] = set()
        for parameter in parameters:
            if parameter.name in seen:
                raise ConfigError(
                    f"parameter name '{parameter.name}' is produced by more than one field"
                )
            seen.add(parameter.name)
            parameter.validate()

        templates = build_templates(fragments)
        experiment = Experiment(
            name=experiment_name,
            namespace=experiment_namespace,
            parameters=list(parameters),
            metrics=self.application.metrics() if self.application else [],
            optimization=list(self.settings.optimization),
            patches=list(templates),
            trial_template=TrialTemplate(
                approximate_runtime_sec=self.settings.approximate_runtime_sec,
                start_time_offset_sec=self.settings.start_time_offset_sec,
            ),
        )
        _log.info(
            "Generated experiment %s with %d parameter(s) and %d patch template(s) "
            "from %d resource(s)",
            experiment_name,
            len(parameters),
            len(templates),
            len(documents),
            extra=context(experiment=experiment_name),
        )
        return GenerationResult(
            experiment=experiment,
            parameters=tuple(parameters),
            templates=tuple(templates),
        )


def generate(
    resources: Iterable[Mapping[str, Any] | Resource],
    *,
    name: str | None = None,
    namespace: str | None = None,
    settings: GeneratorSettings | None = None,
    application: Application | None = None,
) -> GenerationResult:
    return Generator(settings=settings, application=application).generate(
        resources, name=name, namespace=namespace
    )
