# Copyright (c) Syntropy Systems
"""Resolve patch templates against a trial and apply them to the cluster."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import yaml

from knobs.errors import (
    NotFoundError,
    PermanentError,
    RetryableError,
    SelectorError,
    TemplateError,
)
from knobs.models.cluster import ObjectReference
from knobs.models.trial import PatchOperation, PatchType
from knobs.retry import RetryPolicy, run_with_attempts
from knobs.templates import assignment_context, render

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from knobs.cluster import ClusterClient
    from knobs.models.experiment import PatchTemplate
    from knobs.models.trial import Trial


logger = logging.getLogger(__name__)


@dataclass
class _Attempts:
    attempts_remaining: int


def render_patch(template: PatchTemplate, context: dict[str, object]) -> bytes:
    """Evaluate a patch template into JSON bytes.

    The rendered text may be YAML or JSON. JSON patches must be a list of
    operations, merge and strategic patches must be an object.

    Raises:
        TemplateError: The template cannot be evaluated or does not produce a
            patch of the right shape.

    """
    text = render(template.patch, context)
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        msg = f"Rendered patch is not valid YAML or JSON: {e}"
        raise TemplateError(msg) from e

    if template.type == PatchType.JSON:
        if not isinstance(document, list):
            msg = "JSON patch must evaluate to a list of operations"
            raise TemplateError(msg)
    elif not isinstance(document, dict):
        msg = f"{template.type.value} patch must evaluate to an object"
        raise TemplateError(msg)

    return json.dumps(document, separators=(",", ":"), sort_keys=True).encode()


class PatchResolver:
    """Turns an experiment's patch templates into applied patch operations."""

    def __init__(
        self,
        cluster: ClusterClient,
        *,
        attempts: int = 3,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cluster = cluster
        self.attempts = attempts
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def _target(self, template: PatchTemplate, trial: Trial) -> ObjectReference:
        assert template.target_ref is not None
        ref = template.target_ref.clone()
        if not ref.namespace:
            ref.namespace = trial.target_namespace()
        return ref

    async def _match(self, template: PatchTemplate, ref: ObjectReference) -> list[ObjectReference]:
        async def list_targets() -> list[ObjectReference]:
            objects = await self.cluster.list(ref.kind, ref.namespace, template.selector)
            return [o.reference() for o in objects]

        matched = await run_with_attempts(
            _Attempts(self.attempts),
            list_targets,
            self.policy,
            description=f"Listing {ref.kind} matching {template.selector}",
            sleep=self._sleep,
        )
        if not matched:
            msg = f"Selector '{template.selector}' matched no {ref.kind} objects in '{ref.namespace}'"
            raise SelectorError(msg)
        return matched

    async def resolve(self, templates: list[PatchTemplate], trial: Trial) -> list[PatchOperation]:
        """Evaluate every template and store the operations on the trial.

        A template that cannot be evaluated produces an operation with no
        attempts left. Resolution stops there and the template error is raised
        after the partial list is stored; the cluster is not consulted.

        Raises:
            TemplateError: A template failed to evaluate.
            SelectorError: A selector matched nothing.
            AttemptsExhaustedError: Selector lookups kept failing.

        """
        context = assignment_context(trial)
        operations: list[PatchOperation] = []
        try:
            for index, template in enumerate(templates):
                ref = self._target(template, trial)
                try:
                    data = render_patch(template, context)
                    targets = [ref] if ref.name else await self._match(template, ref)
                except (TemplateError, SelectorError):
                    operations.append(
                        PatchOperation(
                            target_ref=ref,
                            patch_type=template.type,
                            template_index=index,
                            attempts_remaining=0,
                        )
                    )
                    raise

                operations.extend(
                    PatchOperation(
                        target_ref=target,
                        patch_type=template.type,
                        data=data,
                        template_index=index,
                        attempts_remaining=self.attempts,
                    )
                    for target in targets
                )
        except PermanentError:
            # Cancelled or exhausted resolution stores nothing and reruns
            trial.spec.patch_operations = operations
            raise

        trial.spec.patch_operations = operations
        logger.info("Resolved %d patch operation(s) for trial %s", len(operations), trial.name)
        return operations

    async def apply(self, trial: Trial, on_change: Callable[[], None] | None = None) -> None:
        """Apply every pending patch operation in order.

        Raises:
            PermanentError: The cluster rejected a patch outright.
            AttemptsExhaustedError: A patch kept failing until its attempts ran out.

        """
        for op in trial.spec.patch_operations:
            if op.attempts_remaining == 0:
                continue

            async def apply_once(op: PatchOperation = op) -> None:
                try:
                    await self.cluster.apply_patch(op.target_ref, op.patch_type, op.data)
                except NotFoundError as e:
                    raise RetryableError(str(e)) from e

            await run_with_attempts(
                op,
                apply_once,
                self.policy,
                description=f"Patching {op.target_ref}",
                on_change=on_change,
                sleep=self._sleep,
            )
            logger.info("Applied %s patch to %s", op.patch_type.value, op.target_ref)
