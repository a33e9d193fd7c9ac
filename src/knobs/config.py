# Copyright (c) Syntropy Systems
"""Configuration management for knobs."""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, cast

import yaml

from knobs.retry import RetryPolicy

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass
class KnobsConfig:
    """Configuration for knobs."""

    # Attempts allowed per patch operation before the trial fails
    patch_attempts: int = 3

    # Attempts allowed per metric before the trial fails
    metric_attempts: int = 3

    # Poll cycles allowed per readiness check
    readiness_attempts: int = 30

    # Delay before the first retry (seconds)
    retry_interval: float = 1.0

    # Multiplier applied to the delay after each failed attempt
    retry_backoff: float = 2.0

    # Upper bound on the retry delay (seconds)
    retry_max_interval: float = 30.0

    # Default delay between readiness polls (seconds)
    readiness_poll_interval: float = 5.0

    # Timeout for metric endpoints and the suggestion service (seconds)
    http_timeout: float = 10.0

    log_level: str = "INFO"
    log_file: Optional[str] = None

    def retry_policy(self) -> RetryPolicy:
        """Build the retry schedule used by patch and metric attempts."""
        return RetryPolicy(
            interval=self.retry_interval,
            backoff=self.retry_backoff,
            max_interval=self.retry_max_interval,
        )


def find_knobs_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .knobs directory by walking up from start_path.

    Returns None if no .knobs directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        knobs_dir = current / ".knobs"
        if knobs_dir.is_dir():
            return knobs_dir
        current = current.parent

    # Check root
    knobs_dir = current / ".knobs"
    if knobs_dir.is_dir():
        return knobs_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global knobs config directory (~/.knobs)."""
    return Path.home() / ".knobs"


def load_config(knobs_dir: Path | None = None) -> KnobsConfig:
    """Load configuration from .knobs/config.yaml or defaults.

    Looks for config in:
    1. Provided knobs_dir
    2. Nearest .knobs directory walking up
    3. ~/.knobs/config.yaml
    4. Defaults
    """
    config = KnobsConfig()

    # Find config file
    config_path = None

    if knobs_dir is not None:
        config_path = knobs_dir / "config.yaml"
    else:
        found_dir = find_knobs_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        for field in fields(config):
            value = data.get(field.name)
            if value is None:
                continue
            default = getattr(config, field.name)
            if isinstance(default, bool) or isinstance(value, bool):
                continue
            if isinstance(default, int) and isinstance(value, (int, float)):
                setattr(config, field.name, int(value))
            elif isinstance(default, float) and isinstance(value, (int, float)):
                setattr(config, field.name, float(value))
            elif isinstance(value, str) and field.name in ("log_level", "log_file"):
                setattr(config, field.name, value)

    return config


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Configure the ``knobs`` logger with a console and optional file handler.

    Repeated calls do not duplicate handlers.
    """
    knobs_logger = logging.getLogger("knobs")
    knobs_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(type(h) is logging.StreamHandler for h in knobs_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        knobs_logger.addHandler(console)

    if log_file is not None:
        resolved = str(Path(log_file).resolve())
        has_file = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == resolved
            for h in knobs_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            knobs_logger.addHandler(file_handler)


def get_db_path(knobs_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if knobs_dir is None:
        knobs_dir = find_knobs_dir()

    if knobs_dir is None:
        msg = "No .knobs directory found. Run 'knobs init' first."
        raise RuntimeError(
            msg
        )

    return knobs_dir / "knobs.db"


def require_knobs_dir() -> Path:
    """Get knobs directory or raise an error if not found."""
    knobs_dir = find_knobs_dir()
    if knobs_dir is None:
        msg = "No .knobs directory found. Run 'knobs init' first."
        raise RuntimeError(
            msg
        )
    return knobs_dir
