# Copyright (c) Syntropy Systems
"""Pytest fixtures for knobs tests."""

import os
import sqlite3
import tempfile
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from knobs.models.experiment import Experiment
from knobs.models.trial import Assignment, Trial

# Store original cwd at module load time
_original_cwd = Path.cwd()

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class RecordingSleep:
    """Async sleep replacement that returns immediately and records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class StepClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


def make_experiment(**spec: object) -> Experiment:
    """Build an experiment with a single replicas parameter and local duration metric."""
    body: dict[str, object] = {
        "parameters": [{"name": "replicas", "min": 1, "max": 4}],
        "metrics": [{"name": "duration", "type": "local", "query": "duration"}],
    }
    body.update(spec)
    return Experiment.model_validate({"name": "web", "spec": body})


def make_trial(experiment: Experiment, name: str = "web-000", **values: int) -> Trial:
    """Build a pending trial for the experiment with the given assignments."""
    from knobs.suggest import new_trial

    assignments = [Assignment(name=k, value=v) for k, v in (values or {"replicas": 3}).items()]
    return new_trial(experiment, assignments, name=name)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def knobs_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary knobs project directory."""
    from knobs.store import init_db

    knobs_dir = temp_dir / ".knobs"
    knobs_dir.mkdir()

    # Initialize database
    db_path = knobs_dir / "knobs.db"
    init_db(db_path)

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_connection(knobs_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from knobs.store import get_connection

    db_path = knobs_project / ".knobs" / "knobs.db"
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def experiment() -> Experiment:
    return make_experiment()
