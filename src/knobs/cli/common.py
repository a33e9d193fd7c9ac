# Copyright (c) Syntropy Systems
"""Helpers shared by knobs commands."""
from __future__ import annotations

import sqlite3

import typer
from rich.console import Console

from knobs.config import get_db_path, require_knobs_dir
from knobs.models.trial import TrialPhase
from knobs.store import get_connection

console = Console()

PHASE_STYLES = {
    TrialPhase.COMPLETE: "green",
    TrialPhase.FAILED: "red",
    TrialPhase.PENDING: "dim",
}


def phase_markup(phase: TrialPhase) -> str:
    """Render a trial phase with its color."""
    style = PHASE_STYLES.get(phase, "blue")
    return f"[{style}]{phase.value}[/{style}]"


def open_store() -> sqlite3.Connection:
    """Connect to the project database, exiting with a message outside a project."""
    try:
        knobs_dir = require_knobs_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    return get_connection(get_db_path(knobs_dir))
