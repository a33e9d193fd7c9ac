# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for knobs."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict, JsonValue
from typing_extensions import Self, TypeAlias

JSONValue: TypeAlias = JsonValue
JSONObject: TypeAlias = dict[str, JSONValue]


class KnobsBaseModel(BaseModel):
    """Base model with shared config for knobs schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )

    def clone(self) -> Self:
        """Return an independent deep copy of this object."""
        return self.model_copy(deep=True)
