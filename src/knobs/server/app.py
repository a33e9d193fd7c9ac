# Copyright (c) Syntropy Systems
"""FastAPI application reporting experiments and trials from the store."""
from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from typing import TYPE_CHECKING, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request

from knobs import __version__, store
from knobs.models.api import (
    ExperimentListResponse,
    ExperimentSummary,
    HealthResponse,
    TrialListResponse,
    TrialSummary,
    summarize_experiment,
)
from knobs.models.experiment import Experiment
from knobs.models.trial import Trial

if TYPE_CHECKING:
    from pathlib import Path


def get_conn(request: Request) -> Iterator[sqlite3.Connection]:
    """Open a connection per request; WAL mode lets these read while trials write."""
    conn = store.get_connection(request.app.state.db_path, check_same_thread=False)
    try:
        yield conn
    finally:
        conn.close()


def create_app(db_path: Path) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        db_path: SQLite database written by trial controllers

    Returns:
        Configured FastAPI application
    """
    store.init_db(db_path)

    app = FastAPI(
        title="knobs server",
        description="Read-only reporting for experiments and trials",
        version=__version__,
    )
    app.state.db_path = db_path

    # --- Experiment Endpoints ---

    @app.get("/api/v1/experiments", response_model=ExperimentListResponse)
    def list_experiments(conn: sqlite3.Connection = Depends(get_conn)) -> ExperimentListResponse:
        """Get all experiments."""
        return ExperimentListResponse(
            experiments=[
                summarize_experiment(e, store.count_trials(conn, e.name))
                for e in store.list_experiments(conn)
            ]
        )

    @app.get("/api/v1/experiments/{name}", response_model=Experiment)
    def get_experiment(name: str, conn: sqlite3.Connection = Depends(get_conn)) -> Experiment:
        """Get the full experiment definition."""
        experiment = store.get_experiment(conn, name)
        if experiment is None:
            raise HTTPException(status_code=404, detail=f"Experiment {name} not found")
        return experiment

    @app.get("/api/v1/experiments/{name}/summary", response_model=ExperimentSummary)
    def get_experiment_summary(
        name: str, conn: sqlite3.Connection = Depends(get_conn)
    ) -> ExperimentSummary:
        """Get an experiment with its trial count."""
        experiment = store.get_experiment(conn, name)
        if experiment is None:
            raise HTTPException(status_code=404, detail=f"Experiment {name} not found")
        return summarize_experiment(experiment, store.count_trials(conn, name))

    # --- Trial Endpoints ---

    @app.get("/api/v1/trials", response_model=TrialListResponse)
    def list_trials(
        experiment: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
        conn: sqlite3.Connection = Depends(get_conn),
    ) -> TrialListResponse:
        """List trials, optionally for one experiment."""
        trials = store.list_trials(conn, experiment=experiment, limit=limit)
        return TrialListResponse(trials=[TrialSummary.from_trial(t) for t in trials])

    @app.get("/api/v1/trials/{name}", response_model=Trial)
    def get_trial(name: str, conn: sqlite3.Connection = Depends(get_conn)) -> Trial:
        """Get the last stored snapshot of a trial."""
        trial = store.get_trial(conn, name)
        if trial is None:
            raise HTTPException(status_code=404, detail=f"Trial {name} not found")
        return trial

    @app.get("/health", response_model=HealthResponse)
    def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="healthy", version=__version__)

    return app
