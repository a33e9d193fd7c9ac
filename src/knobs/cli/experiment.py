# Copyright (c) Syntropy Systems
"""knobs experiment subcommands."""
from __future__ import annotations

from pathlib import Path
from typing import cast

import typer
import yaml
from pydantic import ValidationError
from rich.table import Table

from knobs.cli.common import console, open_store
from knobs.errors import StatusConflictError
from knobs.models.experiment import Experiment
from knobs.store import count_trials, get_experiment, list_experiments, put_experiment

experiment_app = typer.Typer(
    name="experiment",
    help="Define and inspect experiments.",
    no_args_is_help=True,
)


def load_experiment(path: Path) -> Experiment:
    """Load an experiment definition from a YAML file."""
    with path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})
    return Experiment.model_validate(data)


def add(
    experiment_file: Path = typer.Argument(
        ...,
        help="Path to experiment YAML file",
        exists=True,
    ),
    replace: bool = typer.Option(
        False,
        "--replace",
        help="Overwrite an existing experiment with the same name",
    ),
) -> None:
    r"""Add an experiment definition to the project.

    Example experiment.yaml:

    \b
        name: web-tuning
        spec:
          parameters:
            - {name: replicas, min: 1, max: 4}
          metrics:
            - {name: duration, type: local, query: "{{ duration }}", minimize: true}
    """
    try:
        experiment = load_experiment(experiment_file)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        console.print(f"[red]Error loading experiment:[/red] {e}")
        raise typer.Exit(1) from e

    conn = open_store()
    try:
        existing = get_experiment(conn, experiment.name)
        if existing is not None:
            if not replace:
                console.print(
                    f"[red]Error:[/red] Experiment '{experiment.name}' already exists "
                    "(use --replace to overwrite)"
                )
                raise typer.Exit(1)
            experiment.resource_version = existing.resource_version
        stored = put_experiment(conn, experiment)
    except StatusConflictError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(
        f"[green]Saved experiment[/green] {stored.name} "
        f"[dim](version {stored.resource_version})[/dim]"
    )
    console.print(f"  [dim]parameters:[/dim] {', '.join(p.name for p in stored.spec.parameters)}")
    console.print(f"  [dim]metrics:[/dim] {', '.join(m.name for m in stored.spec.metrics)}")


def list_cmd() -> None:
    """List experiments in the project."""
    conn = open_store()
    try:
        experiments = list_experiments(conn)
        counts = {e.name: count_trials(conn, e.name) for e in experiments}
    finally:
        conn.close()

    if not experiments:
        console.print("[dim]No experiments found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Name")
    table.add_column("Parameters")
    table.add_column("Metrics")
    table.add_column("Trials", justify="right")

    for experiment in experiments:
        table.add_row(
            experiment.name,
            ", ".join(f"{p.name}[{p.min},{p.max}]" for p in experiment.spec.parameters),
            ", ".join(m.name for m in experiment.spec.metrics) or "-",
            str(counts[experiment.name]),
        )

    console.print(table)


# Register subcommands
_ = experiment_app.command()(add)
_ = experiment_app.command(name="list")(list_cmd)
