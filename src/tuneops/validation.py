from __future__ import annotations

from tuneops.models import Experiment, IncompatibleDefinitionError
from tuneops.remote import RemoteExperiment


def _describe(local: set[str], remote: set[str]) -> str:
    parts = []
    if local - remote:
        parts.append(f"only local: {sorted(local - remote)}")
    if remote - local:
        parts.append(f"only remote: {sorted(remote - local)}")
    return "; ".join(parts)


def check_definition(experiment: Experiment, remote: RemoteExperiment) -> None:
    """Require identical parameter and metric name sets on both sides.

    Constant parameters are never sent to the service and are left out of the
    comparison.
    """
    local_parameters = {p.name for p in experiment.parameters if not p.is_degenerate}
    remote_parameters = {p.name for p in remote.parameters}
    if local_parameters != remote_parameters or len(remote.parameters) != len(
        remote_parameters
    ):
        raise IncompatibleDefinitionError(
            f"experiment '{experiment.name}' has incompatible parameter definitions "
            f"({_describe(local_parameters, remote_parameters) or 'duplicate remote names'})"
        )

    local_metrics = {m.name for m in experiment.metrics}
    remote_metrics = {m.name for m in remote.metrics}
    if local_metrics != remote_metrics or len(remote.metrics) != len(remote_metrics):
        raise IncompatibleDefinitionError(
            f"experiment '{experiment.name}' has incompatible metric definitions "
            f"({_describe(local_metrics, remote_metrics) or 'duplicate remote names'})"
        )
