# Copyright (c) Syntropy Systems
"""Job execution boundary.

The lifecycle never launches the trial job itself. It signals that the
cluster is ready for the run and then waits for the surrounding orchestration
to report the job's completion.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from knobs.models.trial import Trial

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Get the current UTC time."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobResult:
    """Outcome of a trial run job."""

    succeeded: bool
    start_time: datetime
    completion_time: datetime
    message: str = ""


class JobExecutor(Protocol):
    """Boundary to whatever actually runs trial jobs."""

    async def ready(self, trial: Trial) -> None:
        """Signal that the trial's job may start."""
        ...

    async def wait_for_completion(self, trial: Trial) -> JobResult:
        """Block until the trial's job has finished."""
        ...


class JobTracker:
    """A ``JobExecutor`` fed by explicit completion events.

    With ``auto_complete`` set, every job finishes successfully as soon as it
    is signalled ready, running for ``auto_complete`` of simulated time.
    """

    def __init__(self, auto_complete: timedelta | None = None) -> None:
        self.auto_complete = auto_complete
        self.started: list[str] = []
        self._results: dict[str, asyncio.Future[JobResult]] = {}

    def _future(self, trial_name: str) -> asyncio.Future[JobResult]:
        future = self._results.get(trial_name)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._results[trial_name] = future
        return future

    async def ready(self, trial: Trial) -> None:
        if trial.name not in self.started:
            self.started.append(trial.name)
        logger.info("Trial %s ready to run", trial.name)
        if self.auto_complete is not None:
            start = utcnow()
            self.complete(trial.name, start_time=start, completion_time=start + self.auto_complete)

    def complete(
        self,
        trial_name: str,
        *,
        succeeded: bool = True,
        start_time: datetime | None = None,
        completion_time: datetime | None = None,
        message: str = "",
    ) -> None:
        """Report that a trial's job finished."""
        now = utcnow()
        future = self._future(trial_name)
        if future.done():
            return
        future.set_result(
            JobResult(
                succeeded=succeeded,
                start_time=start_time or now,
                completion_time=completion_time or now,
                message=message,
            )
        )

    async def wait_for_completion(self, trial: Trial) -> JobResult:
        # shield keeps the shared future usable if this waiter is cancelled
        return await asyncio.shield(self._future(trial.name))
