# Copyright (c) Syntropy Systems
"""Pydantic models for knobs API requests and responses."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import Field

from .base import KnobsBaseModel
from .experiment import Constraint, Experiment, Optimization, Parameter
from .trial import Assignment, Trial, TrialCondition, TrialConditionType


class SuggestionRequest(KnobsBaseModel):
    """Request sent to the suggestion service."""

    parameters: list[Parameter]
    constraints: list[Constraint] = Field(default_factory=list)
    optimization: list[Optimization] = Field(default_factory=list)


class SuggestionResponse(KnobsBaseModel):
    """One assignment set from the suggestion service."""

    assignments: list[Assignment]


class ErrorResponse(KnobsBaseModel):
    """Error response."""

    detail: str


class HealthResponse(KnobsBaseModel):
    """Health check response."""

    status: str
    version: str


class ExperimentSummary(KnobsBaseModel):
    """Experiment information with trial counts."""

    name: str
    namespace: str
    parameters: list[str]
    metrics: list[str]
    trials: int = 0


class ExperimentListResponse(KnobsBaseModel):
    """Response containing experiment records."""

    experiments: list[ExperimentSummary]


class TrialSummary(KnobsBaseModel):
    """Trial information response."""

    name: str
    experiment: Optional[str] = None
    phase: str
    assignments: str = ""
    values: str = ""
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    reason: Optional[str] = None
    conditions: list[TrialCondition] = Field(default_factory=list)

    @classmethod
    def from_trial(cls, trial: Trial) -> TrialSummary:
        """Summarize a stored trial for reporting."""
        if trial.is_failed():
            terminal = trial.condition(TrialConditionType.FAILED)
        else:
            terminal = trial.condition(TrialConditionType.COMPLETE)
        return cls(
            name=trial.name,
            experiment=trial.spec.experiment_ref.name if trial.spec.experiment_ref else None,
            phase=trial.status.phase.value,
            assignments=trial.status.assignments,
            values=trial.status.values,
            start_time=trial.status.start_time,
            completion_time=trial.status.completion_time,
            reason=terminal.reason if terminal is not None else None,
            conditions=trial.status.conditions,
        )


class TrialListResponse(KnobsBaseModel):
    """Response containing trial records."""

    trials: list[TrialSummary]


def summarize_experiment(experiment: Experiment, trials: int) -> ExperimentSummary:
    return ExperimentSummary(
        name=experiment.name,
        namespace=experiment.namespace,
        parameters=[p.name for p in experiment.spec.parameters],
        metrics=[m.name for m in experiment.spec.metrics],
        trials=trials,
    )
