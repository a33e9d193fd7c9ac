# Copyright (c) Syntropy Systems
"""knobs init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from knobs.config import KnobsConfig
from knobs.store import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new knobs project.

    Creates a .knobs directory with configuration and database.
    """
    target = path.resolve()
    knobs_dir = target / ".knobs"

    if knobs_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {knobs_dir}")
        return

    knobs_dir.mkdir(parents=True)

    # Default config, written out so it is easy to edit
    defaults = KnobsConfig()
    config = {
        "patch_attempts": defaults.patch_attempts,
        "metric_attempts": defaults.metric_attempts,
        "readiness_attempts": defaults.readiness_attempts,
        "retry_interval": defaults.retry_interval,
        "retry_backoff": defaults.retry_backoff,
        "retry_max_interval": defaults.retry_max_interval,
        "readiness_poll_interval": defaults.readiness_poll_interval,
        "http_timeout": defaults.http_timeout,
        "log_level": defaults.log_level,
    }

    config_path = knobs_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False)

    db_path = knobs_dir / "knobs.db"
    init_db(db_path)

    console.print(f"[green]Initialized knobs project:[/green] {knobs_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
