# Copyright (c) Syntropy Systems
"""Cluster object access used by the trial lifecycle.

The lifecycle only talks to the cluster through ``ClusterClient``. A real
deployment supplies an implementation backed by the cluster API; the
``InMemoryCluster`` here keeps objects in a dict and is used for local runs
and tests.
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Optional, Protocol, cast

from knobs.errors import NotFoundError, PermanentError
from knobs.models.cluster import ClusterObject, ObjectCondition, ObjectReference
from knobs.models.trial import PatchType

if TYPE_CHECKING:
    from knobs.models.base import JSONObject, JSONValue
    from knobs.models.cluster import LabelSelector

logger = logging.getLogger(__name__)


class ClusterClient(Protocol):
    """Boundary to the cluster API.

    Implementations raise ``RetryableError`` for transient failures (timeouts,
    conflicts), ``PermanentError`` for requests that cannot succeed and
    ``NotFoundError`` when the referenced object does not exist.
    """

    async def get(self, ref: ObjectReference) -> ClusterObject:
        """Fetch a single object."""
        ...

    async def list(
        self,
        kind: str,
        namespace: str,
        selector: Optional[LabelSelector] = None,
    ) -> list[ClusterObject]:
        """List objects of a kind, in a stable order."""
        ...

    async def apply_patch(self, ref: ObjectReference, patch_type: PatchType, data: bytes) -> None:
        """Apply a patch to a single object."""
        ...

    async def create(self, obj: ClusterObject) -> None:
        ...

    async def delete(self, ref: ObjectReference) -> None:
        ...


def merge_patch(target: JSONValue, patch: JSONValue) -> JSONValue:
    """Apply an RFC 7386 merge patch and return the result."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result: dict[str, JSONValue] = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def _pointer_tokens(pointer: str) -> list[str]:
    if pointer == "":
        return []
    if not pointer.startswith("/"):
        msg = f"Invalid JSON pointer: {pointer!r}"
        raise PermanentError(msg)
    return [t.replace("~1", "/").replace("~0", "~") for t in pointer[1:].split("/")]


def _list_index(items: list[JSONValue], token: str, path: object, *, end: bool = False) -> int:
    """Parse a list index; with ``end`` the position after the last item is allowed."""
    if end and token == "-":
        return len(items)
    try:
        index = int(token)
    except ValueError as e:
        msg = f"Path {path} has non-numeric list index {token!r}"
        raise PermanentError(msg) from e
    upper = len(items) if end else len(items) - 1
    if index < 0 or index > upper:
        msg = f"Path {path} index {index} is out of range"
        raise PermanentError(msg)
    return index


def json_patch(target: JSONValue, operations: list[JSONObject]) -> JSONValue:
    """Apply the add, replace and remove operations of an RFC 6902 patch."""
    doc = copy.deepcopy(target)
    for op in operations:
        tokens = _pointer_tokens(cast("str", op.get("path", "")))
        if not tokens:
            doc = copy.deepcopy(op.get("value"))
            continue
        parent = doc
        for token in tokens[:-1]:
            if isinstance(parent, list):
                parent = parent[_list_index(parent, token, op.get("path"))]
            elif isinstance(parent, dict) and token in parent:
                parent = parent[token]
            else:
                msg = f"Path {op.get('path')} does not exist"
                raise PermanentError(msg)
        last = tokens[-1]
        kind = op.get("op")
        if isinstance(parent, list):
            index = _list_index(parent, last, op.get("path"), end=kind == "add")
            if kind == "add":
                parent.insert(index, copy.deepcopy(op.get("value")))
            elif kind == "replace":
                parent[index] = copy.deepcopy(op.get("value"))
            elif kind == "remove":
                del parent[index]
            else:
                msg = f"Unsupported JSON patch operation: {kind}"
                raise PermanentError(msg)
        elif isinstance(parent, dict):
            if kind in ("add", "replace"):
                if kind == "replace" and last not in parent:
                    msg = f"Path {op.get('path')} does not exist"
                    raise PermanentError(msg)
                parent[last] = copy.deepcopy(op.get("value"))
            elif kind == "remove":
                if last not in parent:
                    msg = f"Path {op.get('path')} does not exist"
                    raise PermanentError(msg)
                del parent[last]
            else:
                msg = f"Unsupported JSON patch operation: {kind}"
                raise PermanentError(msg)
        else:
            msg = f"Path {op.get('path')} does not exist"
            raise PermanentError(msg)
    return doc


class InMemoryCluster:
    """A ``ClusterClient`` holding objects in memory.

    Failures can be injected per method to exercise retry paths::

        cluster.inject_failure("apply_patch", RetryableError("conflict"), times=2)
    """

    def __init__(self, objects: list[ClusterObject] | None = None) -> None:
        self._objects: dict[tuple[str, str, str], ClusterObject] = {}
        self._failures: dict[str, list[BaseException]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self.applied: list[tuple[ObjectReference, PatchType, bytes]] = []
        for obj in objects or []:
            self.add(obj)

    def add(self, obj: ClusterObject) -> None:
        """Store an object, replacing any existing one with the same identity."""
        self._objects[obj.reference().key()] = obj.clone()

    def set_condition(
        self,
        ref: ObjectReference,
        condition_type: str,
        status: str = "True",
    ) -> None:
        """Set a typed condition on a stored object."""
        obj = self._objects[ref.key()]
        conditions = [c for c in obj.conditions if c.type != condition_type]
        conditions.append(ObjectCondition.model_validate({"type": condition_type, "status": status}))
        obj.conditions = conditions

    def inject_failure(self, method: str, error: BaseException, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` raise ``error``."""
        self._failures[method].extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def peek(self, ref: ObjectReference) -> ClusterObject | None:
        """Return a copy of a stored object without going through failure injection."""
        obj = self._objects.get(ref.key())
        return obj.clone() if obj is not None else None

    async def get(self, ref: ObjectReference) -> ClusterObject:
        self._maybe_fail("get")
        obj = self._objects.get(ref.key())
        if obj is None:
            msg = f"{ref} not found"
            raise NotFoundError(msg)
        return obj.clone()

    async def list(
        self,
        kind: str,
        namespace: str,
        selector: Optional[LabelSelector] = None,
    ) -> list[ClusterObject]:
        self._maybe_fail("list")
        matched = [
            obj.clone()
            for (obj_kind, obj_ns, _), obj in self._objects.items()
            if obj_kind == kind
            and (not namespace or obj_ns == namespace)
            and (selector is None or selector.matches(obj.labels))
        ]
        return sorted(matched, key=lambda o: (o.namespace, o.name))

    async def apply_patch(self, ref: ObjectReference, patch_type: PatchType, data: bytes) -> None:
        self._maybe_fail("apply_patch")
        async with self._lock:
            obj = self._objects.get(ref.key())
            if obj is None:
                msg = f"{ref} not found"
                raise NotFoundError(msg)
            try:
                patch = json.loads(data)
            except ValueError as e:
                msg = f"Patch for {ref} is not valid JSON: {e}"
                raise PermanentError(msg) from e

            body: JSONObject = {"metadata": {"labels": dict(obj.labels)}, "spec": obj.spec}
            if patch_type == PatchType.JSON:
                if not isinstance(patch, list):
                    msg = "JSON patches must be a list of operations"
                    raise PermanentError(msg)
                patched = json_patch(body, patch)
            else:
                patched = merge_patch(body, patch)

            if not isinstance(patched, dict):
                msg = f"Patch for {ref} did not produce an object"
                raise PermanentError(msg)
            metadata = patched.get("metadata")
            labels = metadata.get("labels") if isinstance(metadata, dict) else None
            spec = patched.get("spec")
            obj.labels = cast("dict[str, str]", labels or {})
            obj.spec = cast("JSONObject", spec if isinstance(spec, dict) else {})
            self.applied.append((ref, patch_type, data))
            logger.debug("Applied %s patch to %s", patch_type.value, ref)

    async def create(self, obj: ClusterObject) -> None:
        self._maybe_fail("create")
        self.add(obj)

    async def delete(self, ref: ObjectReference) -> None:
        self._maybe_fail("delete")
        if self._objects.pop(ref.key(), None) is None:
            msg = f"{ref} not found"
            raise NotFoundError(msg)
