# Copyright (c) Syntropy Systems
"""Pydantic models describing an experiment's search space."""

from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from pydantic import Field, model_validator

from knobs.errors import InvalidAssignmentError

from .base import KnobsBaseModel
from .cluster import LabelSelector, ObjectReference
from .trial import PatchType, TrialSpec


class Parameter(KnobsBaseModel):
    """Inclusive integer domain of one search space component."""

    name: str
    min: int = 0
    max: int = 0

    @model_validator(mode="after")
    def _check_bounds(self) -> Parameter:
        if self.min > self.max:
            msg = f"Parameter '{self.name}' has min {self.min} greater than max {self.max}"
            raise ValueError(msg)
        return self


class OrderConstraint(KnobsBaseModel):
    """Requires the lower parameter to be less than or equal to the upper one."""

    lower_parameter: str = Field(alias="lowerParameter")
    upper_parameter: str = Field(alias="upperParameter")


class SumConstraintParameter(KnobsBaseModel):
    name: str
    weight: float = 1.0


class SumConstraint(KnobsBaseModel):
    """Bounds the weighted sum of a group of parameters."""

    bound: float
    is_upper_bound: bool = Field(default=False, alias="isUpperBound")
    parameters: list[SumConstraintParameter] = Field(default_factory=list)


class Constraint(KnobsBaseModel):
    """A constraint over parameters; exactly one of order or sum is set."""

    name: str = ""
    order: Optional[OrderConstraint] = None
    sum: Optional[SumConstraint] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> Constraint:
        if (self.order is None) == (self.sum is None):
            msg = f"Constraint '{self.name}' must set exactly one of 'order' or 'sum'"
            raise ValueError(msg)
        return self

    def parameter_names(self) -> list[str]:
        if self.order is not None:
            return [self.order.lower_parameter, self.order.upper_parameter]
        assert self.sum is not None
        return [p.name for p in self.sum.parameters]

    def is_satisfied(self, values: dict[str, int]) -> bool:
        """Evaluate the constraint against a complete assignment."""
        if self.order is not None:
            return values[self.order.lower_parameter] <= values[self.order.upper_parameter]
        assert self.sum is not None
        total = sum(p.weight * values[p.name] for p in self.sum.parameters)
        if self.sum.is_upper_bound:
            return total <= self.sum.bound
        return total >= self.sum.bound


class MetricType(str, Enum):
    """How a metric value is collected."""

    # Expression evaluated against the trial itself; no network call
    LOCAL = "local"
    # PromQL query against the matched service; must evaluate to a scalar
    PROMETHEUS = "prometheus"
    # JSON document fetched from the matched service, queried with JSONPath
    JSONPATH = "jsonpath"


class Metric(KnobsBaseModel):
    """An observable outcome of a trial run."""

    name: str
    minimize: bool = False
    type: MetricType = MetricType.LOCAL
    query: str
    # Optional query for the error (standard deviation) of the value
    error_query: str = Field(default="", alias="errorQuery")
    selector: Optional[LabelSelector] = None
    port: Union[int, str, None] = None
    path: str = ""


class PatchReadinessGate(KnobsBaseModel):
    """Conditions the patched object must report before the trial proceeds."""

    condition_types: list[str] = Field(default_factory=list, alias="conditionTypes")


class PatchTemplate(KnobsBaseModel):
    """A patch template and the object(s) it applies to."""

    type: PatchType = PatchType.STRATEGIC
    patch: str
    target_ref: Optional[ObjectReference] = Field(default=None, alias="targetRef")
    # Used only when the target reference has no name
    selector: Optional[LabelSelector] = None
    readiness_gates: list[PatchReadinessGate] = Field(
        default_factory=list, alias="readinessGates"
    )

    @model_validator(mode="after")
    def _check_target(self) -> PatchTemplate:
        if self.target_ref is None or not self.target_ref.kind:
            msg = "Patch template requires a targetRef with at least a kind"
            raise ValueError(msg)
        if not self.target_ref.name and self.selector is None:
            msg = "Patch template requires a targetRef name or a selector"
            raise ValueError(msg)
        return self


class Optimization(KnobsBaseModel):
    """Name/value setting passed through to the optimizer."""

    name: str
    value: str


class TrialTemplate(KnobsBaseModel):
    """Template used to stamp out new trials."""

    namespace: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    spec: TrialSpec = Field(default_factory=TrialSpec)


class ExperimentSpec(KnobsBaseModel):
    """Desired state of an experiment."""

    replicas: int = 1
    parallelism: Optional[int] = None
    optimization: list[Optimization] = Field(default_factory=list)
    parameters: list[Parameter] = Field(default_factory=list)
    constraints: list[Constraint] = Field(default_factory=list)
    metrics: list[Metric] = Field(default_factory=list)
    patches: list[PatchTemplate] = Field(default_factory=list)
    namespace_selector: Optional[LabelSelector] = Field(default=None, alias="namespaceSelector")
    selector: Optional[LabelSelector] = None
    template: TrialTemplate = Field(default_factory=TrialTemplate)


class Experiment(KnobsBaseModel):
    """Search space, metrics and patches shared by all of its trials.

    Experiments are read-only once trials exist. Controllers receive deep
    copies or treat the instance as immutable.
    """

    name: str
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    resource_version: int = Field(default=0, alias="resourceVersion")
    spec: ExperimentSpec = Field(default_factory=ExperimentSpec)

    @model_validator(mode="after")
    def _check_references(self) -> Experiment:
        names = [p.name for p in self.spec.parameters]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            msg = f"Duplicate parameter names: {', '.join(duplicates)}"
            raise ValueError(msg)

        metric_names = [m.name for m in self.spec.metrics]
        duplicates = sorted({n for n in metric_names if metric_names.count(n) > 1})
        if duplicates:
            msg = f"Duplicate metric names: {', '.join(duplicates)}"
            raise ValueError(msg)

        known = set(names)
        for constraint in self.spec.constraints:
            for ref in constraint.parameter_names():
                if ref not in known:
                    msg = f"Constraint '{constraint.name}' references unknown parameter '{ref}'"
                    raise ValueError(msg)
        return self

    @property
    def effective_parallelism(self) -> int:
        if self.spec.parallelism is not None:
            return self.spec.parallelism
        return self.spec.replicas

    def reference(self) -> ObjectReference:
        return ObjectReference(
            api_version="knobs/v1alpha1",
            kind="Experiment",
            namespace=self.namespace,
            name=self.name,
        )

    def check_assignments(self, assignments: dict[str, int]) -> None:
        """Validate a complete assignment against the search space.

        Raises:
            InvalidAssignmentError: If a parameter is missing or unknown, a value
                is out of bounds, or a constraint is violated.

        """
        expected = {p.name for p in self.spec.parameters}
        missing = sorted(expected - assignments.keys())
        if missing:
            msg = f"Missing assignments for: {', '.join(missing)}"
            raise InvalidAssignmentError(msg)
        unknown = sorted(assignments.keys() - expected)
        if unknown:
            msg = f"Unknown parameters: {', '.join(unknown)}"
            raise InvalidAssignmentError(msg)

        for p in self.spec.parameters:
            value = assignments[p.name]
            if not p.min <= value <= p.max:
                msg = f"Assignment {p.name}={value} is outside [{p.min}, {p.max}]"
                raise InvalidAssignmentError(msg)

        for constraint in self.spec.constraints:
            if not constraint.is_satisfied(assignments):
                label = constraint.name or ", ".join(constraint.parameter_names())
                msg = f"Assignment violates constraint '{label}'"
                raise InvalidAssignmentError(msg)
