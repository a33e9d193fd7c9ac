# Copyright (c) Syntropy Systems
"""Pydantic models for cluster objects, references and label selectors."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from .base import JSONObject, KnobsBaseModel


class ObjectReference(KnobsBaseModel):
    """Reference to a single cluster object.

    The name may be omitted when a selector is used to match objects of the
    referenced kind instead.
    """

    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str = ""
    namespace: str = ""
    name: str = ""

    def key(self) -> tuple[str, str, str]:
        """Return the (kind, namespace, name) identity of the referenced object."""
        return (self.kind, self.namespace, self.name)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class LabelSelectorRequirement(KnobsBaseModel):
    """A set-based label requirement."""

    key: str
    operator: Literal["In", "NotIn", "Exists", "DoesNotExist"]
    values: list[str] = Field(default_factory=list)

    def matches(self, labels: dict[str, str]) -> bool:
        """Check a single requirement against a label set."""
        if self.operator == "Exists":
            return self.key in labels
        if self.operator == "DoesNotExist":
            return self.key not in labels
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        return self.key not in labels or labels[self.key] not in self.values


class LabelSelector(KnobsBaseModel):
    """Label query over a set of objects.

    An empty selector matches everything.
    """

    match_labels: dict[str, str] = Field(default_factory=dict, alias="matchLabels")
    match_expressions: list[LabelSelectorRequirement] = Field(
        default_factory=list, alias="matchExpressions"
    )

    def matches(self, labels: dict[str, str]) -> bool:
        """Return True if the label set satisfies every requirement."""
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        return all(req.matches(labels) for req in self.match_expressions)

    def __str__(self) -> str:
        parts = [f"{k}={v}" for k, v in sorted(self.match_labels.items())]
        for req in self.match_expressions:
            if req.values:
                parts.append(f"{req.key} {req.operator.lower()} ({','.join(req.values)})")
            elif req.operator == "Exists":
                parts.append(req.key)
            else:
                parts.append(f"!{req.key}")
        return ",".join(parts)


class ObjectCondition(KnobsBaseModel):
    """A typed condition reported by a cluster object."""

    type: str
    status: Literal["True", "False", "Unknown"] = "Unknown"
    reason: str = ""
    message: str = ""


class ClusterObject(KnobsBaseModel):
    """Minimal view of a cluster object used by the trial lifecycle."""

    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str
    namespace: str = ""
    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    spec: JSONObject = Field(default_factory=dict)
    conditions: list[ObjectCondition] = Field(default_factory=list)

    def reference(self) -> ObjectReference:
        """Return a reference pointing at this object."""
        return ObjectReference(
            api_version=self.api_version,
            kind=self.kind,
            namespace=self.namespace,
            name=self.name,
        )

    def condition(self, condition_type: str) -> Optional[ObjectCondition]:
        """Return the condition of the given type, if reported."""
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None
