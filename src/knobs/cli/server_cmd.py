# Copyright (c) Syntropy Systems
"""CLI command for running the knobs reporting server."""

import typer
import uvicorn
from rich.console import Console

from knobs.config import get_db_path, require_knobs_dir

console = Console()


def server(
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
) -> None:
    """
    Start the read-only reporting server for the current project.

    Examples:

        # Serve on the default port
        knobs server

        # Bind to all interfaces (for remote access)
        knobs server --host 0.0.0.0 --port 8080
    """
    try:
        knobs_dir = require_knobs_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    from knobs.server.app import create_app

    db_path = get_db_path(knobs_dir)

    console.print("[bold]knobs server[/bold]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Database: {db_path}")
    console.print()

    app = create_app(db_path)
    uvicorn.run(app, host=host, port=port, log_level="info")
