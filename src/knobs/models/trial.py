# Copyright (c) Syntropy Systems
"""Pydantic models for trials and their observed status."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import Field

from .base import KnobsBaseModel
from .cluster import LabelSelector, ObjectReference


class TrialPhase(str, Enum):
    """Lifecycle state of a trial."""

    PENDING = "Pending"
    PATCHING = "Patching"
    AWAITING_SETUP = "AwaitingSetup"
    AWAITING_READY = "AwaitingReady"
    RUNNING = "Running"
    MEASURING = "Measuring"
    SETTING_DOWN = "SettingDown"
    COMPLETE = "Complete"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (TrialPhase.COMPLETE, TrialPhase.FAILED)


class TrialConditionType(str, Enum):
    """Observable trial condition types."""

    COMPLETE = "Complete"
    FAILED = "Failed"
    # Non-blocking teardown failure, recorded with status "False"
    SETUP_DELETED = "SetupDeleted"


class PatchType(str, Enum):
    """Patch content types understood by the cluster API."""

    JSON = "json"
    MERGE = "merge"
    STRATEGIC = "strategic"


class Assignment(KnobsBaseModel):
    """A parameter value chosen for one trial."""

    name: str
    value: int


class PatchOperation(KnobsBaseModel):
    """A patch resolved for this trial, ready to apply to one object."""

    target_ref: ObjectReference = Field(alias="targetRef")
    patch_type: PatchType = Field(default=PatchType.STRATEGIC, alias="patchType")
    data: bytes = b""
    # Position of the experiment patch template this operation came from
    template_index: Optional[int] = Field(default=None, alias="templateIndex")
    # Forced to zero once the patch is applied
    attempts_remaining: int = Field(default=0, alias="attemptsRemaining")


class Value(KnobsBaseModel):
    """An observed metric value, formatted as strings."""

    name: str
    value: str = ""
    error: str = ""
    # Forced to zero once the metric is collected
    attempts_remaining: int = Field(default=0, alias="attemptsRemaining")


class TrialCondition(KnobsBaseModel):
    """A timestamped observation of the trial's state."""

    type: TrialConditionType
    status: Literal["True", "False", "Unknown"]
    last_probe_time: datetime = Field(alias="lastProbeTime")
    last_transition_time: datetime = Field(alias="lastTransitionTime")
    reason: str = ""
    message: str = ""


class ParameterSelector(KnobsBaseModel):
    """Selects a trial assignment by parameter name."""

    name: str


class HelmValueSource(KnobsBaseModel):
    """Source for a Helm value."""

    parameter_ref: Optional[ParameterSelector] = Field(default=None, alias="parameterRef")


class HelmValue(KnobsBaseModel):
    """A value passed to a Helm release through a set option."""

    name: str
    force_string: bool = Field(default=False, alias="forceString")
    value: Union[int, str, None] = None
    value_from: Optional[HelmValueSource] = Field(default=None, alias="valueFrom")


class SetupTask(KnobsBaseModel):
    """Application state installed before a trial runs and removed afterwards."""

    name: str
    image: str = ""
    skip_create: bool = Field(default=False, alias="skipCreate")
    skip_delete: bool = Field(default=False, alias="skipDelete")
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    helm_chart: str = Field(default="", alias="helmChart")
    helm_values: list[HelmValue] = Field(default_factory=list, alias="helmValues")


class TrialReadinessGate(KnobsBaseModel):
    """Objects whose conditions must hold before the trial run starts."""

    kind: str = ""
    api_version: str = Field(default="v1", alias="apiVersion")
    name: str = ""
    selector: Optional[LabelSelector] = None
    condition_types: list[str] = Field(default_factory=list, alias="conditionTypes")
    initial_delay_seconds: float = Field(default=0.0, alias="initialDelaySeconds")
    period_seconds: Optional[float] = Field(default=None, alias="periodSeconds")
    failure_threshold: Optional[int] = Field(default=None, alias="failureThreshold")


class ReadinessCheck(KnobsBaseModel):
    """A readiness gate resolved against this trial."""

    target_ref: ObjectReference = Field(alias="targetRef")
    selector: Optional[LabelSelector] = None
    condition_types: list[str] = Field(default_factory=list, alias="conditionTypes")
    initial_delay_seconds: float = Field(default=0.0, alias="initialDelaySeconds")
    period_seconds: float = Field(default=5.0, alias="periodSeconds")
    attempts_remaining: int = Field(default=0, alias="attemptsRemaining")
    last_check_time: Optional[datetime] = Field(default=None, alias="lastCheckTime")


class TrialSpec(KnobsBaseModel):
    """Desired state of a trial."""

    experiment_ref: Optional[ObjectReference] = Field(default=None, alias="experimentRef")
    target_namespace: str = Field(default="", alias="targetNamespace")
    assignments: list[Assignment] = Field(default_factory=list)
    selector: Optional[LabelSelector] = None
    start_time_offset: Optional[timedelta] = Field(default=None, alias="startTimeOffset")
    approximate_runtime: Optional[timedelta] = Field(default=None, alias="approximateRuntime")
    ttl_seconds_after_finished: Optional[int] = Field(
        default=None, alias="ttlSecondsAfterFinished"
    )
    ttl_seconds_after_failure: Optional[int] = Field(
        default=None, alias="ttlSecondsAfterFailure"
    )
    readiness_gates: list[TrialReadinessGate] = Field(
        default_factory=list, alias="readinessGates"
    )
    readiness_checks: list[ReadinessCheck] = Field(default_factory=list, alias="readinessChecks")
    patch_operations: list[PatchOperation] = Field(default_factory=list, alias="patchOperations")
    values: list[Value] = Field(default_factory=list)
    setup_tasks: list[SetupTask] = Field(default_factory=list, alias="setupTasks")
    setup_service_account_name: str = Field(default="", alias="setupServiceAccountName")


class TrialStatus(KnobsBaseModel):
    """Observed state of a trial."""

    phase: TrialPhase = TrialPhase.PENDING
    # String renderings for reporting, e.g. "replicas=3, cpu=200"
    assignments: str = ""
    values: str = ""
    start_time: Optional[datetime] = Field(default=None, alias="startTime")
    completion_time: Optional[datetime] = Field(default=None, alias="completionTime")
    conditions: list[TrialCondition] = Field(default_factory=list)


class Trial(KnobsBaseModel):
    """One run of an experiment for a specific assignment."""

    name: str
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    resource_version: int = Field(default=0, alias="resourceVersion")
    spec: TrialSpec = Field(default_factory=TrialSpec)
    status: TrialStatus = Field(default_factory=TrialStatus)

    def assignment_map(self) -> dict[str, int]:
        """Return assignments keyed by parameter name."""
        return {a.name: a.value for a in self.spec.assignments}

    def value_map(self) -> dict[str, Value]:
        return {v.name: v for v in self.spec.values}

    def condition(self, condition_type: TrialConditionType) -> Optional[TrialCondition]:
        """Return the most recent condition of the given type."""
        for cond in reversed(self.status.conditions):
            if cond.type == condition_type:
                return cond
        return None

    def is_finished(self) -> bool:
        """Check whether a Complete or Failed condition is True."""
        for condition_type in (TrialConditionType.COMPLETE, TrialConditionType.FAILED):
            cond = self.condition(condition_type)
            if cond is not None and cond.status == "True":
                return True
        return False

    def is_failed(self) -> bool:
        cond = self.condition(TrialConditionType.FAILED)
        return cond is not None and cond.status == "True"

    def target_namespace(self) -> str:
        """Default namespace for objects the trial patches."""
        return self.spec.target_namespace or self.namespace

    def expires_at(self) -> Optional[datetime]:
        """Time after which an external collector may delete this trial.

        Returns None while the trial is running or when no TTL applies.
        """
        if not self.is_finished():
            return None
        if self.is_failed():
            ttl = self.spec.ttl_seconds_after_failure
            cond = self.condition(TrialConditionType.FAILED)
        else:
            ttl = self.spec.ttl_seconds_after_finished
            cond = self.condition(TrialConditionType.COMPLETE)
        if ttl is None or cond is None:
            return None
        return cond.last_transition_time + timedelta(seconds=ttl)
