# Copyright (c) Syntropy Systems
"""SQLite persistence for experiments and trials with optimistic concurrency."""
from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Optional, TypeVar

from knobs.errors import StatusConflictError
from knobs.models.experiment import Experiment
from knobs.models.trial import Trial

if TYPE_CHECKING:
    from pathlib import Path

    from knobs.models.base import KnobsBaseModel

logger = logging.getLogger(__name__)

Stored = TypeVar("Stored", Experiment, Trial)

SCHEMA = """
-- Experiments (search space definitions)
CREATE TABLE IF NOT EXISTS experiments (
    name TEXT PRIMARY KEY,
    resource_version INTEGER NOT NULL,
    body TEXT NOT NULL,  -- JSON
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Trials (one row per trial, whole-object snapshots)
CREATE TABLE IF NOT EXISTS trials (
    name TEXT PRIMARY KEY,
    experiment TEXT,
    phase TEXT,
    resource_version INTEGER NOT NULL,
    body TEXT NOT NULL,  -- JSON
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_trials_experiment ON trials(experiment);
"""


def get_connection(db_path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode so reporting reads never block the controller's writes
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access

    Pass check_same_thread=False when the connection is handed between
    threads, as the reporting server does.
    """
    conn = sqlite3.connect(
        str(db_path),
        timeout=5.0,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def _body(obj: KnobsBaseModel) -> str:
    return obj.model_dump_json(by_alias=True)


def _put(
    conn: sqlite3.Connection,
    table: str,
    obj: Stored,
    extra: dict[str, Optional[str]],
) -> Stored:
    """Write a whole-object snapshot if nobody else has written since it was read.

    A ``resource_version`` of 0 means the object is new. Otherwise the stored
    version must still equal the object's version.
    """
    stored = obj.clone()
    stored.resource_version = obj.resource_version + 1
    columns = ["name", "resource_version", "body", *extra]
    values = [obj.name, stored.resource_version, _body(stored), *extra.values()]

    if obj.resource_version == 0:
        placeholders = ", ".join("?" for _ in columns)
        try:
            conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",  # noqa: S608
                values,
            )
        except sqlite3.IntegrityError as e:
            msg = f"{table[:-1].capitalize()} {obj.name} already exists"
            raise StatusConflictError(msg) from e
        return stored

    assignments = ", ".join(f"{c} = ?" for c in columns[1:])
    cursor = conn.execute(
        f"""
        UPDATE {table}
        SET {assignments}, updated_at = datetime('now')
        WHERE name = ? AND resource_version = ?
        """,  # noqa: S608
        [*values[1:], obj.name, obj.resource_version],
    )
    if cursor.rowcount == 0:
        msg = (
            f"{table[:-1].capitalize()} {obj.name} changed since version "
            f"{obj.resource_version} was read"
        )
        raise StatusConflictError(msg)
    return stored


# --- Experiment Operations ---

def put_experiment(conn: sqlite3.Connection, experiment: Experiment) -> Experiment:
    """Create or update an experiment; returns the stored copy with its new version.

    Raises:
        StatusConflictError: The stored version moved on since ``experiment`` was read.

    """
    return _put(conn, "experiments", experiment, {})


def get_experiment(conn: sqlite3.Connection, name: str) -> Optional[Experiment]:
    """Get an experiment by name."""
    row = conn.execute("SELECT body FROM experiments WHERE name = ?", (name,)).fetchone()
    if row is None:
        return None
    return Experiment.model_validate_json(row["body"])


def list_experiments(conn: sqlite3.Connection) -> list[Experiment]:
    """Get all experiments ordered by name."""
    rows = conn.execute("SELECT body FROM experiments ORDER BY name").fetchall()
    return [Experiment.model_validate_json(row["body"]) for row in rows]


# --- Trial Operations ---

def put_trial(conn: sqlite3.Connection, trial: Trial) -> Trial:
    """Create or update a trial; returns the stored copy with its new version.

    Raises:
        StatusConflictError: The stored version moved on since ``trial`` was read.

    """
    experiment = trial.spec.experiment_ref.name if trial.spec.experiment_ref else None
    return _put(
        conn,
        "trials",
        trial,
        {"experiment": experiment, "phase": trial.status.phase.value},
    )


def get_trial(conn: sqlite3.Connection, name: str) -> Optional[Trial]:
    """Get a trial by name."""
    row = conn.execute("SELECT body FROM trials WHERE name = ?", (name,)).fetchone()
    if row is None:
        return None
    return Trial.model_validate_json(row["body"])


def list_trials(
    conn: sqlite3.Connection,
    experiment: Optional[str] = None,
    limit: int = 100,
) -> list[Trial]:
    """Get trials, optionally for a single experiment, oldest first."""
    if experiment is not None:
        rows = conn.execute(
            "SELECT body FROM trials WHERE experiment = ? ORDER BY created_at, name LIMIT ?",
            (experiment, limit),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT body FROM trials ORDER BY created_at, name LIMIT ?",
            (limit,),
        ).fetchall()
    return [Trial.model_validate_json(row["body"]) for row in rows]


def count_trials(conn: sqlite3.Connection, experiment: str) -> int:
    """Count the trials recorded for an experiment."""
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM trials WHERE experiment = ?", (experiment,)
    ).fetchone()
    return int(row["n"])


class TrialStatusWriter:
    """Persist hook for a trial controller.

    Each call writes the snapshot with compare-and-swap on its resource version
    and returns the stored copy, so the controller carries the new version
    into its next write. Each write is one local row update, quick enough
    to run on the event loop that drives the controllers.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def __call__(self, trial: Trial) -> Trial:
        stored = put_trial(self.conn, trial)
        logger.debug(
            "Stored trial %s at version %d (%s)",
            stored.name,
            stored.resource_version,
            stored.status.phase.value,
        )
        return stored
