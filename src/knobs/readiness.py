# Copyright (c) Syntropy Systems
"""Readiness gating: wait for cluster objects to report the required conditions."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING

from knobs.errors import NotFoundError, RetryableError
from knobs.jobs import utcnow
from knobs.models.cluster import ObjectReference
from knobs.models.trial import ReadinessCheck

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from knobs.cluster import ClusterClient
    from knobs.models.cluster import ClusterObject
    from knobs.models.experiment import Experiment
    from knobs.models.trial import Trial

logger = logging.getLogger(__name__)


class Readiness(str, Enum):
    READY = "ready"
    NOT_READY = "not-ready"
    TIMED_OUT = "timed-out"


def build_checks(
    experiment: Experiment,
    trial: Trial,
    *,
    period: float,
    attempts: int,
) -> list[ReadinessCheck]:
    """Resolve the trial's readiness gates and patch gates into checks.

    Patch gates apply to every object the matching patch template was
    resolved to. Must run after patch resolution.
    """
    namespace = trial.target_namespace()
    checks: list[ReadinessCheck] = []

    for gate in trial.spec.readiness_gates:
        checks.append(
            ReadinessCheck(
                target_ref=ObjectReference(
                    api_version=gate.api_version,
                    kind=gate.kind,
                    namespace=namespace,
                    name=gate.name,
                ),
                selector=gate.selector.clone() if gate.selector is not None else None,
                condition_types=list(gate.condition_types),
                initial_delay_seconds=gate.initial_delay_seconds,
                period_seconds=gate.period_seconds if gate.period_seconds is not None else period,
                attempts_remaining=gate.failure_threshold or attempts,
            )
        )

    for index, template in enumerate(experiment.spec.patches):
        if not template.readiness_gates:
            continue
        condition_types = [c for g in template.readiness_gates for c in g.condition_types]
        for op in trial.spec.patch_operations:
            if op.template_index != index:
                continue
            checks.append(
                ReadinessCheck(
                    target_ref=op.target_ref.clone(),
                    condition_types=condition_types,
                    period_seconds=period,
                    attempts_remaining=attempts,
                )
            )
    return checks


class ReadinessEvaluator:
    """Polls the objects behind readiness checks until their conditions hold."""

    def __init__(
        self,
        cluster: ClusterClient,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cluster = cluster
        self._sleep = sleep
        self._clock = clock

    async def _targets(self, check: ReadinessCheck) -> list[ClusterObject]:
        ref = check.target_ref
        if ref.name:
            return [await self.cluster.get(ref)]
        return await self.cluster.list(ref.kind, ref.namespace, check.selector)

    async def check_once(self, check: ReadinessCheck) -> Readiness:
        """Evaluate a single check without touching its counter.

        Missing objects and transient cluster errors count as not ready.
        """
        try:
            objects = await self._targets(check)
        except (NotFoundError, RetryableError) as e:
            logger.debug("Readiness target %s unavailable: %s", check.target_ref, e)
            return Readiness.NOT_READY

        if not objects:
            return Readiness.NOT_READY
        for obj in objects:
            for condition_type in check.condition_types:
                cond = obj.condition(condition_type)
                if cond is None or cond.status != "True":
                    return Readiness.NOT_READY
        return Readiness.READY

    async def poll(self, checks: list[ReadinessCheck]) -> Readiness:
        """Run one poll cycle over all unsatisfied checks.

        Satisfied checks drop to zero attempts. Each unsatisfied check uses up
        one attempt; a check left with none means the trial timed out.
        """
        result = Readiness.READY
        for check in checks:
            if check.attempts_remaining == 0:
                continue
            outcome = await self.check_once(check)
            check.last_check_time = self._clock()
            if outcome == Readiness.READY:
                check.attempts_remaining = 0
                continue
            check.attempts_remaining -= 1
            if check.attempts_remaining == 0:
                logger.warning(
                    "Readiness check on %s timed out waiting for %s",
                    check.target_ref,
                    ", ".join(check.condition_types) or "existence",
                )
                return Readiness.TIMED_OUT
            result = Readiness.NOT_READY
        return result

    async def wait_until_ready(
        self,
        checks: list[ReadinessCheck],
        on_change: Callable[[], None] | None = None,
    ) -> Readiness:
        """Poll until every check is satisfied or one of them runs out of attempts."""
        pending = [c for c in checks if c.attempts_remaining > 0]
        if not pending:
            return Readiness.READY

        initial_delay = max(c.initial_delay_seconds for c in pending)
        if initial_delay > 0:
            await self._sleep(initial_delay)

        while True:
            result = await self.poll(checks)
            if on_change is not None:
                on_change()
            if result != Readiness.NOT_READY:
                return result
            period = min(c.period_seconds for c in checks if c.attempts_remaining > 0)
            await self._sleep(period)
