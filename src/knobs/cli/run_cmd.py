# Copyright (c) Syntropy Systems
"""knobs run command."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Optional, cast

import httpx
import typer
import yaml
from pydantic import ValidationError

from knobs.cli.common import console, open_store, phase_markup
from knobs.cluster import InMemoryCluster
from knobs.config import configure_logging, load_config
from knobs.controller import TrialController
from knobs.errors import StatusConflictError, TerminalTrialError
from knobs.jobs import JobTracker
from knobs.models.cluster import ClusterObject
from knobs.models.trial import Trial, TrialConditionType
from knobs.setup_tasks import InMemoryReleases
from knobs.store import TrialStatusWriter, get_experiment, get_trial


def load_objects(path: Path) -> list[ClusterObject]:
    """Load cluster objects from a YAML list."""
    with path.open() as f:
        data = cast("list[dict[str, object]]", yaml.safe_load(f) or [])
    return [ClusterObject.model_validate(item) for item in data]


def run(
    trial_name: str = typer.Argument(..., help="Trial to drive through its lifecycle"),
    objects: Optional[Path] = typer.Option(
        None,
        "--objects", "-o",
        help="YAML list of cluster objects to seed the in-memory cluster with",
        exists=True,
    ),
    job_seconds: float = typer.Option(
        0.0,
        "--job-seconds", "-j",
        help="Simulated runtime of the trial job",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout", "-t",
        help="Give up on the trial after this many seconds",
    ),
) -> None:
    """Run a stored trial against an in-memory cluster.

    Every status change is written back to the project database, so
    `knobs show` and the server report progress while the trial runs.
    """
    config = load_config()
    configure_logging(config.log_level, config.log_file)

    try:
        seeded = load_objects(objects) if objects is not None else []
    except (OSError, yaml.YAMLError, ValidationError) as e:
        console.print(f"[red]Error loading objects:[/red] {e}")
        raise typer.Exit(1) from e

    conn = open_store()
    try:
        trial = get_trial(conn, trial_name)
        if trial is None:
            console.print(f"[red]Error:[/red] Trial '{trial_name}' not found")
            raise typer.Exit(1)
        if trial.spec.experiment_ref is None:
            console.print(f"[red]Error:[/red] Trial '{trial_name}' has no experiment")
            raise typer.Exit(1)
        experiment = get_experiment(conn, trial.spec.experiment_ref.name)
        if experiment is None:
            console.print(
                f"[red]Error:[/red] Experiment '{trial.spec.experiment_ref.name}' not found"
            )
            raise typer.Exit(1)

        async def drive() -> Trial:
            async with httpx.AsyncClient(timeout=config.http_timeout) as http:
                controller = TrialController(
                    experiment,
                    trial,
                    cluster=InMemoryCluster(seeded),
                    jobs=JobTracker(auto_complete=timedelta(seconds=job_seconds)),
                    setup_runner=InMemoryReleases(),
                    http=http,
                    config=config,
                    persist=TrialStatusWriter(conn),
                )
                return await controller.run(timeout=timeout)

        result = asyncio.run(drive())
    except (StatusConflictError, TerminalTrialError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    except asyncio.TimeoutError as e:
        console.print(f"[yellow]Timed out:[/yellow] trial '{trial_name}' did not finish")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(f"Trial {result.name}: {phase_markup(result.status.phase)}")
    if result.status.values:
        console.print(f"  [dim]values:[/dim] {result.status.values}")
    for c in result.status.conditions:
        if c.type == TrialConditionType.SETUP_DELETED:
            console.print(f"  [yellow]warning:[/yellow] {c.message}")
    if result.is_failed():
        failed = result.condition(TrialConditionType.FAILED)
        if failed is not None:
            console.print(f"  [red]{failed.reason}:[/red] {failed.message}")
        raise typer.Exit(1)
