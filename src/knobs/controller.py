# Copyright (c) Syntropy Systems
"""Trial lifecycle controller.

Drives one trial through its phases::

    Pending -> Patching -> AwaitingSetup -> AwaitingReady -> Running
            -> Measuring -> SettingDown -> Complete | Failed

Phases run strictly one after another. Every fatal path records a Failed
condition with a reason code; setup teardown failures are only warnings.
The controller is the sole writer of its trial's status. Readers get deep
copies of the last published snapshot.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Callable, Optional

from knobs.config import KnobsConfig
from knobs.errors import (
    AttemptsExhaustedError,
    InvalidAssignmentError,
    PermanentError,
    TemplateError,
    TerminalTrialError,
)
from knobs.jobs import utcnow
from knobs.metrics import MetricCollector
from knobs.models.trial import TrialCondition, TrialConditionType, TrialPhase
from knobs.patching import PatchResolver
from knobs.readiness import Readiness, ReadinessEvaluator, build_checks
from knobs.setup_tasks import SetupTaskError, SetupTaskOrchestrator

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable
    from datetime import datetime

    import httpx

    from knobs.cluster import ClusterClient
    from knobs.jobs import JobExecutor, JobResult
    from knobs.models.experiment import Experiment
    from knobs.models.trial import Trial
    from knobs.setup_tasks import SetupTaskRunner

logger = logging.getLogger(__name__)

REASON_INVALID_ASSIGNMENTS = "InvalidAssignments"
REASON_PATCH_INVALID = "PatchTemplateInvalid"
REASON_PATCH_FAILED = "PatchFailed"
REASON_SETUP_CREATE_FAILED = "SetupCreateFailed"
REASON_SETUP_DELETE_FAILED = "SetupDeleteFailed"
REASON_READINESS_TIMEOUT = "ReadinessTimeout"
REASON_READINESS_INVALID = "ReadinessCheckInvalid"
REASON_JOB_FAILED = "JobFailed"
REASON_COMPLETE = "TrialComplete"

# Phases in the order they run; Failed may follow any of them
_SEQUENCE = [
    TrialPhase.PENDING,
    TrialPhase.PATCHING,
    TrialPhase.AWAITING_SETUP,
    TrialPhase.AWAITING_READY,
    TrialPhase.RUNNING,
    TrialPhase.MEASURING,
    TrialPhase.SETTING_DOWN,
    TrialPhase.COMPLETE,
]

# Phases after which setup tasks may exist in the cluster
_SETUP_TOUCHED = {
    TrialPhase.AWAITING_SETUP,
    TrialPhase.AWAITING_READY,
    TrialPhase.RUNNING,
    TrialPhase.MEASURING,
    TrialPhase.SETTING_DOWN,
}


class TrialFailure(Exception):
    """Raised inside a phase to end the trial as Failed."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(f"{reason}: {message}")
        self.reason = reason
        self.message = message


def allowed_transition(current: TrialPhase, target: TrialPhase) -> bool:
    """Check a phase change against the lifecycle."""
    if current.terminal:
        return False
    if target == TrialPhase.FAILED:
        return True
    index = _SEQUENCE.index(current)
    return index + 1 < len(_SEQUENCE) and _SEQUENCE[index + 1] == target


def describe_assignments(trial: Trial) -> str:
    return ", ".join(f"{a.name}={a.value}" for a in trial.spec.assignments)


def describe_values(trial: Trial) -> str:
    return ", ".join(f"{v.name}={v.value}" for v in trial.spec.values if v.value)


class TrialController:
    """Runs the lifecycle of a single trial.

    Args:
        experiment: The trial's experiment. Only read, never modified.
        trial: Starting state; the controller works on its own copy.
        cluster: Cluster object access.
        jobs: Receives the ready signal and reports job completion.
        setup_runner: Installs setup tasks; required when the trial has any.
        http: Client for metric endpoints.
        config: Attempt counts and retry timing.
        persist: Called with every published snapshot; returns the stored
            copy. May raise ``StatusConflictError``, which ends ``run``.
            Runs synchronously on the event loop, so it must return quickly.
        sleep: Delay function, replaceable in tests.
        clock: Time source for conditions and check timestamps.

    """

    def __init__(
        self,
        experiment: Experiment,
        trial: Trial,
        *,
        cluster: ClusterClient,
        jobs: JobExecutor,
        setup_runner: SetupTaskRunner | None = None,
        http: httpx.AsyncClient | None = None,
        config: KnobsConfig | None = None,
        persist: Callable[[Trial], Trial] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.experiment = experiment
        self.config = config or KnobsConfig()
        self.jobs = jobs
        self._persist = persist
        self._clock = clock
        policy = self.config.retry_policy()

        self.patches = PatchResolver(
            cluster, attempts=self.config.patch_attempts, policy=policy, sleep=sleep
        )
        self.setup = SetupTaskOrchestrator(setup_runner) if setup_runner is not None else None
        self.readiness = ReadinessEvaluator(cluster, sleep=sleep, clock=clock)
        self.metrics = MetricCollector(
            cluster, http, attempts=self.config.metric_attempts, policy=policy, sleep=sleep
        )

        self._trial = trial.clone()
        self._lock = threading.Lock()
        self._snapshot = self._trial.clone()
        self._frozen: Optional[str] = None
        self._failure: Optional[TrialFailure] = None
        self.transitions: list[tuple[TrialPhase, TrialPhase]] = []
        if self._trial.status.phase.terminal:
            self._frozen = self._spec_fingerprint()

    @property
    def phase(self) -> TrialPhase:
        return self._trial.status.phase

    def snapshot(self) -> Trial:
        """Return a consistent copy of the last published trial state."""
        with self._lock:
            return self._snapshot.clone()

    def _spec_fingerprint(self) -> str:
        spec = self._trial.spec
        return "|".join(
            [
                repr([a.model_dump() for a in spec.assignments]),
                repr([op.model_dump() for op in spec.patch_operations]),
                repr([v.model_dump() for v in spec.values]),
                repr([t.model_dump() for t in spec.setup_tasks]),
            ]
        )

    def _publish(self) -> None:
        if self._frozen is not None and self._spec_fingerprint() != self._frozen:
            msg = f"Trial {self._trial.name} was modified after it finished"
            raise TerminalTrialError(msg)

        self._trial.status.assignments = describe_assignments(self._trial)
        self._trial.status.values = describe_values(self._trial)
        snapshot = self._trial.clone()
        if self._persist is not None:
            snapshot = self._persist(snapshot)
            self._trial.resource_version = snapshot.resource_version
        with self._lock:
            self._snapshot = snapshot

    def _transition(self, target: TrialPhase) -> None:
        current = self._trial.status.phase
        if not allowed_transition(current, target):
            msg = f"Trial {self._trial.name} cannot move from {current.value} to {target.value}"
            raise TerminalTrialError(msg)
        self._trial.status.phase = target
        self.transitions.append((current, target))
        logger.info("Trial %s: %s -> %s", self._trial.name, current.value, target.value)
        if target.terminal:
            self._frozen = self._spec_fingerprint()
        self._publish()

    def _append_condition(
        self,
        condition_type: TrialConditionType,
        status: str,
        reason: str,
        message: str,
    ) -> None:
        now = self._clock()
        previous = self._trial.condition(condition_type)
        transition_time = now
        if previous is not None and previous.status == status:
            transition_time = previous.last_transition_time
        self._trial.status.conditions.append(
            TrialCondition.model_validate(
                {
                    "type": condition_type,
                    "status": status,
                    "last_probe_time": now,
                    "last_transition_time": transition_time,
                    "reason": reason,
                    "message": message,
                }
            )
        )

    def _fail(self, failure: TrialFailure) -> None:
        logger.warning("Trial %s failed: %s", self._trial.name, failure)
        self._append_condition(TrialConditionType.FAILED, "True", failure.reason, failure.message)
        self._transition(TrialPhase.FAILED)

    def _complete(self) -> None:
        self._append_condition(
            TrialConditionType.COMPLETE, "True", REASON_COMPLETE, "Trial completed successfully"
        )
        self._transition(TrialPhase.COMPLETE)

    # --- Phases ---

    async def _admit(self) -> TrialPhase:
        try:
            self.experiment.check_assignments(self._trial.assignment_map())
        except InvalidAssignmentError as e:
            raise TrialFailure(REASON_INVALID_ASSIGNMENTS, str(e)) from e
        return TrialPhase.PATCHING

    async def _patch(self) -> TrialPhase:
        trial = self._trial
        if not trial.spec.patch_operations and self.experiment.spec.patches:
            try:
                await self.patches.resolve(self.experiment.spec.patches, trial)
            except TemplateError as e:
                raise TrialFailure(REASON_PATCH_INVALID, str(e)) from e
            except (PermanentError, AttemptsExhaustedError) as e:
                raise TrialFailure(REASON_PATCH_FAILED, str(e)) from e
            finally:
                self._publish()

        if not trial.spec.readiness_checks:
            trial.spec.readiness_checks = build_checks(
                self.experiment,
                trial,
                period=self.config.readiness_poll_interval,
                attempts=self.config.readiness_attempts,
            )

        try:
            await self.patches.apply(trial, on_change=self._publish)
        except (PermanentError, AttemptsExhaustedError) as e:
            raise TrialFailure(REASON_PATCH_FAILED, str(e)) from e
        return TrialPhase.AWAITING_SETUP

    async def _create_setup(self) -> TrialPhase:
        if self._trial.spec.setup_tasks:
            if self.setup is None:
                msg = "Trial has setup tasks but no setup task runner is configured"
                raise TrialFailure(REASON_SETUP_CREATE_FAILED, msg)
            try:
                await self.setup.run_create(self._trial)
            except SetupTaskError as e:
                raise TrialFailure(REASON_SETUP_CREATE_FAILED, str(e)) from e
        return TrialPhase.AWAITING_READY

    async def _await_ready(self) -> TrialPhase:
        for check in self._trial.spec.readiness_checks:
            if not check.target_ref.kind or not (check.target_ref.name or check.selector):
                msg = f"Readiness check on {check.target_ref} needs a kind and a name or selector"
                raise TrialFailure(REASON_READINESS_INVALID, msg)
        result = await self.readiness.wait_until_ready(
            self._trial.spec.readiness_checks, on_change=self._publish
        )
        if result == Readiness.TIMED_OUT:
            msg = "Readiness checks did not pass within the allowed attempts"
            raise TrialFailure(REASON_READINESS_TIMEOUT, msg)
        return TrialPhase.RUNNING

    def _record_times(self, result: JobResult) -> None:
        spec = self._trial.spec
        start = result.start_time
        if spec.start_time_offset is not None:
            start = start + spec.start_time_offset
        completion = result.completion_time
        if spec.approximate_runtime is not None:
            completion = min(completion, start + spec.approximate_runtime)
        completion = max(completion, start)
        self._trial.status.start_time = start
        self._trial.status.completion_time = completion

    async def _run_job(self) -> TrialPhase:
        await self.jobs.ready(self.snapshot())
        result = await self.jobs.wait_for_completion(self.snapshot())
        self._record_times(result)
        if not result.succeeded:
            raise TrialFailure(REASON_JOB_FAILED, result.message or "Trial job failed")
        return TrialPhase.MEASURING

    async def _measure(self) -> TrialPhase:
        failures = await self.metrics.collect(
            self.experiment, self._trial, on_change=self._publish
        )
        if failures:
            first = failures[0]
            details = "; ".join(f"{f.metric}: {f.message}" for f in failures)
            self._failure = TrialFailure(first.reason, details)
        return TrialPhase.SETTING_DOWN

    async def _teardown(self) -> None:
        if self.setup is None or not self._trial.spec.setup_tasks:
            return
        failures = await self.setup.run_delete(self._trial)
        for failure in failures:
            self._append_condition(
                TrialConditionType.SETUP_DELETED,
                "False",
                REASON_SETUP_DELETE_FAILED,
                f"Setup task '{failure.task}': {failure.message}",
            )

    async def _set_down(self) -> TrialPhase:
        await self._teardown()
        if self._failure is not None:
            return TrialPhase.FAILED
        return TrialPhase.COMPLETE

    # --- Driver ---

    async def run(self, timeout: float | None = None) -> Trial:
        """Drive the trial to a terminal phase and return the final snapshot.

        A trial that already finished is returned unchanged. Cancellation,
        including hitting ``timeout``, stops the trial where it is and leaves
        every attempt counter as it was before the interrupted attempt.

        Raises:
            asyncio.CancelledError: The run was cancelled.
            asyncio.TimeoutError: ``timeout`` elapsed first.
            StatusConflictError: Persisting a snapshot hit a newer stored version.

        """
        if timeout is not None:
            return await asyncio.wait_for(self._run(), timeout)
        return await self._run()

    async def _run(self) -> Trial:
        if self._trial.is_finished():
            logger.debug("Trial %s already finished", self._trial.name)
            return self.snapshot()

        handlers = {
            TrialPhase.PENDING: self._admit,
            TrialPhase.PATCHING: self._patch,
            TrialPhase.AWAITING_SETUP: self._create_setup,
            TrialPhase.AWAITING_READY: self._await_ready,
            TrialPhase.RUNNING: self._run_job,
            TrialPhase.MEASURING: self._measure,
            TrialPhase.SETTING_DOWN: self._set_down,
        }

        while not self.phase.terminal:
            phase = self.phase
            try:
                target = await handlers[phase]()
            except TrialFailure as failure:
                self._fail(failure)
                if phase in _SETUP_TOUCHED:
                    await self._teardown()
                    self._publish()
                break

            if target == TrialPhase.COMPLETE:
                self._complete()
            elif target == TrialPhase.FAILED:
                assert self._failure is not None
                self._fail(self._failure)
            else:
                self._transition(target)

        return self.snapshot()


async def run_trials(
    controllers: Iterable[TrialController],
    timeout: float | None = None,
) -> list[Trial | BaseException]:
    """Run many trials concurrently; one trial's error never affects another.

    Returns each trial's final snapshot, or the exception that ended its run.
    """
    return await asyncio.gather(
        *(c.run(timeout=timeout) for c in controllers),
        return_exceptions=True,
    )
