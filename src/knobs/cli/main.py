# Copyright (c) Syntropy Systems
"""Main CLI entry point for knobs."""

import typer

from knobs.cli.experiment import experiment_app
from knobs.cli.init_cmd import init
from knobs.cli.run_cmd import run
from knobs.cli.server_cmd import server
from knobs.cli.suggest_cmd import suggest
from knobs.cli.trials import show, trial_app, trials

app = typer.Typer(
    name="knobs",
    help=(
        "Trial lifecycle for black-box optimization. Patch, wait for ready, "
        "run, measure."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(trials)
_ = app.command()(show)
_ = app.command()(suggest)
_ = app.command()(run)
_ = app.command()(server)

# Register sub-apps
app.add_typer(experiment_app, name="experiment")
app.add_typer(trial_app, name="trial")


if __name__ == "__main__":
    app()
