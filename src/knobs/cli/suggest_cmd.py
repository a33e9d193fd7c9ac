# Copyright (c) Syntropy Systems
"""knobs suggest command."""
from __future__ import annotations

import asyncio

import typer

from knobs.cli.common import console, open_store
from knobs.config import load_config
from knobs.errors import StatusConflictError, SuggestionError
from knobs.models.trial import Assignment
from knobs.store import count_trials, get_experiment, put_trial
from knobs.suggest import SuggestionClient, new_trial


def suggest(
    experiment_name: str = typer.Argument(..., help="Experiment to request an assignment for"),
    server: str = typer.Option(
        ...,
        "--server", "-s",
        envvar="KNOBS_SUGGESTION_SERVER",
        help="Suggestion service URL (e.g., http://optimizer:8080)",
    ),
    create: bool = typer.Option(
        False,
        "--create",
        help="Create a pending trial from the suggestion",
    ),
) -> None:
    """Ask the suggestion service for the next assignment."""
    config = load_config()
    conn = open_store()
    try:
        experiment = get_experiment(conn, experiment_name)
        if experiment is None:
            console.print(f"[red]Error:[/red] Experiment '{experiment_name}' not found")
            raise typer.Exit(1)

        async def request() -> list[Assignment]:
            async with SuggestionClient(server, timeout=config.http_timeout) as client:
                return await client.suggest(experiment)

        assignments = asyncio.run(request())
        console.print(
            "[bold]Suggested:[/bold] " + ", ".join(f"{a.name}={a.value}" for a in assignments)
        )

        if create:
            trial = new_trial(experiment, assignments, index=count_trials(conn, experiment.name))
            stored = put_trial(conn, trial)
            console.print(f"[green]Created trial[/green] {stored.name}")
    except (SuggestionError, StatusConflictError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()
