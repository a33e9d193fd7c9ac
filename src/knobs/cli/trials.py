# Copyright (c) Syntropy Systems
"""knobs trial create, trials and show commands."""
from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.table import Table

from knobs.cli.common import console, open_store, phase_markup
from knobs.errors import InvalidAssignmentError, StatusConflictError, SuggestionError
from knobs.models.trial import Assignment, TrialConditionType
from knobs.store import count_trials, get_experiment, get_trial, list_trials, put_trial
from knobs.suggest import RandomSuggester, new_trial

trial_app = typer.Typer(
    name="trial",
    help="Create trials for an experiment.",
    no_args_is_help=True,
)


def parse_assignments(pairs: list[str]) -> list[Assignment]:
    """Parse ``name=value`` pairs into assignments."""
    assignments: list[Assignment] = []
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            msg = f"Expected NAME=VALUE, got '{pair}'"
            raise typer.BadParameter(msg)
        try:
            value = int(raw)
        except ValueError as e:
            msg = f"Value for '{name}' must be an integer, got '{raw}'"
            raise typer.BadParameter(msg) from e
        assignments.append(Assignment(name=name.strip(), value=value))
    return assignments


def create(
    experiment_name: str = typer.Argument(..., help="Experiment to create the trial for"),
    assign: Optional[list[str]] = typer.Option(
        None,
        "--assign", "-a",
        help="Parameter assignment as NAME=VALUE (repeatable)",
    ),
    random_assign: bool = typer.Option(
        False,
        "--random",
        help="Draw a random assignment that satisfies the constraints",
    ),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for --random"),
    name: Optional[str] = typer.Option(None, "--name", help="Trial name"),
) -> None:
    """Create a pending trial from explicit or random assignments."""
    conn = open_store()
    try:
        experiment = get_experiment(conn, experiment_name)
        if experiment is None:
            console.print(f"[red]Error:[/red] Experiment '{experiment_name}' not found")
            raise typer.Exit(1)

        if random_assign:
            assignments = asyncio.run(RandomSuggester(seed=seed).suggest(experiment))
        else:
            assignments = parse_assignments(assign or [])
        experiment.check_assignments({a.name: a.value for a in assignments})

        trial = new_trial(
            experiment,
            assignments,
            name=name,
            index=count_trials(conn, experiment.name),
        )
        stored = put_trial(conn, trial)
    except (InvalidAssignmentError, SuggestionError, StatusConflictError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(f"[green]Created trial[/green] {stored.name}")
    console.print(
        "  [dim]assignments:[/dim] "
        + ", ".join(f"{a.name}={a.value}" for a in stored.spec.assignments)
    )


def trials(
    experiment: Optional[str] = typer.Option(
        None,
        "--experiment", "-e",
        help="Only show trials of this experiment",
    ),
    last: int = typer.Option(
        20,
        "--last", "-n",
        help="Number of trials to show",
    ),
) -> None:
    """List trials and their phases."""
    conn = open_store()
    try:
        trial_list = list_trials(conn, experiment=experiment, limit=last)
    finally:
        conn.close()

    if not trial_list:
        console.print("[dim]No trials found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Name")
    table.add_column("Phase")
    table.add_column("Assignments")
    table.add_column("Values")
    table.add_column("Reason", style="dim")

    for trial in trial_list:
        reason = ""
        if trial.is_failed():
            failed = trial.condition(TrialConditionType.FAILED)
            reason = failed.reason if failed is not None else ""
        table.add_row(
            trial.name,
            phase_markup(trial.status.phase),
            trial.status.assignments
            or ", ".join(f"{a.name}={a.value}" for a in trial.spec.assignments),
            trial.status.values or "-",
            reason,
        )

    console.print(table)


def show(
    trial_name: str = typer.Argument(..., help="Trial to show details for"),
) -> None:
    """Show detailed information about a trial.

    Displays assignments, patch operations, values and conditions.
    """
    conn = open_store()
    try:
        trial = get_trial(conn, trial_name)
    finally:
        conn.close()

    if trial is None:
        console.print(f"[red]Error:[/red] Trial '{trial_name}' not found")
        raise typer.Exit(1)

    console.print(f"\n[bold]Trial {trial.name}[/bold]")
    if trial.spec.experiment_ref is not None:
        console.print(f"  [dim]experiment:[/dim] {trial.spec.experiment_ref.name}")
    console.print(f"  [dim]phase:[/dim] {phase_markup(trial.status.phase)}")
    console.print(f"  [dim]version:[/dim] {trial.resource_version}")
    if trial.status.start_time:
        console.print(f"  [dim]started:[/dim] {trial.status.start_time}")
    if trial.status.completion_time:
        console.print(f"  [dim]completed:[/dim] {trial.status.completion_time}")
    expires = trial.expires_at()
    if expires is not None:
        console.print(f"  [dim]expires:[/dim] {expires}")

    console.print("\n[bold]Assignments[/bold]")
    for a in trial.spec.assignments:
        console.print(f"  {a.name}: {a.value}")

    if trial.spec.patch_operations:
        console.print("\n[bold]Patch operations[/bold]")
        for op in trial.spec.patch_operations:
            console.print(
                f"  {op.target_ref} ({op.patch_type.value}) "
                f"[dim]attempts left: {op.attempts_remaining}[/dim]"
            )

    if trial.spec.values:
        console.print("\n[bold]Values[/bold]")
        for v in trial.spec.values:
            error = f" ± {v.error}" if v.error else ""
            console.print(
                f"  {v.name}: {v.value or '-'}{error} "
                f"[dim]attempts left: {v.attempts_remaining}[/dim]"
            )

    if trial.status.conditions:
        console.print("\n[bold]Conditions[/bold]")
        for c in trial.status.conditions:
            console.print(f"  {c.type.value}={c.status} {c.reason}: {c.message}")

    console.print()


# Register subcommands
_ = trial_app.command()(create)
