# Copyright (c) Syntropy Systems
"""Create and remove the auxiliary application state a trial depends on."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from knobs.errors import KnobsError, TemplateError
from knobs.templates import assignment_context, render

if TYPE_CHECKING:
    from knobs.models.trial import HelmValue, SetupTask, Trial

logger = logging.getLogger(__name__)


class SetupTaskError(KnobsError):
    """A setup task step failed."""

    def __init__(self, task: str, message: str) -> None:
        super().__init__(f"Setup task '{task}': {message}")
        self.task = task


class SetupTaskRunner(Protocol):
    """Installs and removes the release behind a setup task."""

    async def is_installed(self, trial: Trial, task: SetupTask) -> bool:
        ...

    async def install(self, trial: Trial, task: SetupTask, set_args: list[str]) -> None:
        ...

    async def uninstall(self, trial: Trial, task: SetupTask) -> None:
        ...


def release_name(trial: Trial, task: SetupTask) -> str:
    """Name of the release a setup task manages for a trial."""
    return f"{trial.name}-{task.name}"


def _helm_value(value: HelmValue, trial: Trial, context: dict[str, object]) -> str:
    if value.value_from is not None and value.value_from.parameter_ref is not None:
        name = value.value_from.parameter_ref.name
        assignments = trial.assignment_map()
        if name not in assignments:
            msg = f"Helm value '{value.name}' references unassigned parameter '{name}'"
            raise TemplateError(msg)
        return str(assignments[name])
    if isinstance(value.value, int):
        return str(value.value)
    return render(value.value or "", context)


def helm_set_args(task: SetupTask, trial: Trial) -> list[str]:
    """Build ``--set``/``--set-string`` arguments for a setup task's Helm values.

    Raises:
        TemplateError: A value template failed or references an unknown parameter.

    """
    context = assignment_context(trial)
    args: list[str] = []
    for value in task.helm_values:
        flag = "--set-string" if value.force_string else "--set"
        args.extend([flag, f"{value.name}={_helm_value(value, trial, context)}"])
    return args


@dataclass
class SetupDeleteFailure:
    """A teardown step that failed; reported as a warning."""

    task: str
    message: str


class SetupTaskOrchestrator:
    """Runs the create and delete phases of a trial's setup tasks in list order."""

    def __init__(self, runner: SetupTaskRunner) -> None:
        self.runner = runner

    async def run_create(self, trial: Trial) -> list[str]:
        """Create every task not marked skip-create.

        Tasks that are already installed count as created. Returns the names of
        the tasks acted on.

        Raises:
            SetupTaskError: A create step failed; the trial cannot proceed.

        """
        created: list[str] = []
        for task in trial.spec.setup_tasks:
            if task.skip_create:
                logger.debug("Skipping create for setup task %s", task.name)
                continue
            try:
                set_args = helm_set_args(task, trial)
                if await self.runner.is_installed(trial, task):
                    logger.info("Setup task %s already installed", task.name)
                else:
                    await self.runner.install(trial, task, set_args)
                    logger.info("Created setup task %s for trial %s", task.name, trial.name)
            except KnobsError as e:
                raise SetupTaskError(task.name, str(e)) from e
            created.append(task.name)
        return created

    async def run_delete(self, trial: Trial) -> list[SetupDeleteFailure]:
        """Delete every task not marked skip-delete, regardless of skip-create.

        Failures do not stop later tasks; they are returned for reporting.
        """
        failures: list[SetupDeleteFailure] = []
        for task in trial.spec.setup_tasks:
            if task.skip_delete:
                logger.debug("Skipping delete for setup task %s", task.name)
                continue
            try:
                if await self.runner.is_installed(trial, task):
                    await self.runner.uninstall(trial, task)
                    logger.info("Deleted setup task %s for trial %s", task.name, trial.name)
            except KnobsError as e:
                logger.warning("Setup task %s delete failed: %s", task.name, e)
                failures.append(SetupDeleteFailure(task=task.name, message=str(e)))
        return failures


class InMemoryReleases:
    """A ``SetupTaskRunner`` that records releases instead of installing them."""

    def __init__(self) -> None:
        self.releases: dict[str, list[str]] = {}
        self.history: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], KnobsError] = {}

    def fail(self, action: str, task_name: str, error: KnobsError) -> None:
        """Make every ``action`` ("install" or "uninstall") of a task raise ``error``."""
        self._failures[(action, task_name)] = error

    def _check(self, action: str, task: SetupTask) -> None:
        error = self._failures.get((action, task.name))
        if error is not None:
            raise error

    async def is_installed(self, trial: Trial, task: SetupTask) -> bool:
        return release_name(trial, task) in self.releases

    async def install(self, trial: Trial, task: SetupTask, set_args: list[str]) -> None:
        self._check("install", task)
        self.releases[release_name(trial, task)] = list(set_args)
        self.history.append(("install", task.name))

    async def uninstall(self, trial: Trial, task: SetupTask) -> None:
        self._check("uninstall", task)
        self.releases.pop(release_name(trial, task), None)
        self.history.append(("uninstall", task.name))
