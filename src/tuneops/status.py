from __future__ import annotations

from collections import Counter
from typing import Iterable

from rich import box
from rich.console import Console
from rich.table import Table

from tuneops.models import Experiment, Trial
from tuneops.trial import assignments_summary, trial_phase, values_summary


def _bounds(parameter) -> str:
    if parameter.values:
        return ", ".join(parameter.values)
    return f"{parameter.min}..{parameter.max}"


def parameters_table(experiment: Experiment) -> Table:
    table = Table(title=f"Experiment {experiment.name}", box=box.SIMPLE)
    table.add_column("Parameter", style="bold cyan")
    table.add_column("Range")
    table.add_column("Baseline", justify="right")
    for parameter in experiment.parameters:
        baseline = "-" if parameter.baseline is None else str(parameter.baseline)
        table.add_row(parameter.name, _bounds(parameter), baseline)
    if not experiment.parameters:
        table.add_row("<none>", "-", "-")
    return table


def trials_table(trials: Iterable[Trial]) -> Table:
    table = Table(title="Trials", box=box.SIMPLE)
    table.add_column("Trial")
    table.add_column("Phase")
    table.add_column("Assignments")
    table.add_column("Values")
    rows = 0
    for trial in trials:
        table.add_row(
            trial.name or f"{trial.generate_name}<pending>",
            trial.phase or trial_phase(trial),
            trial.assignments_summary or assignments_summary(trial) or "-",
            trial.values_summary or values_summary(trial) or "-",
        )
        rows += 1
    if rows == 0:
        table.add_row("<none>", "-", "-", "-")
    return table


def print_summary(
    experiment: Experiment, trials: Iterable[Trial], console: Console | None = None
) -> None:
    out = console or Console(highlight=False)
    trial_list = list(trials)
    out.print(parameters_table(experiment))
    out.print(trials_table(trial_list))
    phases = Counter(t.phase or trial_phase(t) for t in trial_list)
    summary = ", ".join(f"{phase}={count}" for phase, count in sorted(phases.items()))
    out.print(f"{len(trial_list)} trial(s): {summary or 'none'}")
