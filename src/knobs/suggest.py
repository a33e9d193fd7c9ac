# Copyright (c) Syntropy Systems
"""Sources of new assignments, and stamping trials out of an experiment."""
from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING, Optional

import httpx
from pydantic import ValidationError
from typing_extensions import Self

from knobs.errors import InvalidAssignmentError, SuggestionError
from knobs.models.api import ErrorResponse, SuggestionRequest, SuggestionResponse
from knobs.models.trial import Assignment, Trial

if TYPE_CHECKING:
    from types import TracebackType

    from knobs.models.experiment import Experiment

logger = logging.getLogger(__name__)

# Draws before a constrained search space is considered infeasible
MAX_DRAWS = 1000


class SuggestionClient:
    """HTTP client for an external optimizer.

    Calls are never retried here. Cancelling the awaiting task cancels the
    request in flight.
    """

    server_url: str
    timeout: float

    def __init__(
        self,
        server_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            server_url: Base URL of the optimizer (e.g., "http://optimizer:8080")
            timeout: Request timeout in seconds
            transport: Alternative transport, mostly for tests

        """
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def suggest(self, experiment: Experiment) -> list[Assignment]:
        """Request one assignment set for the experiment.

        Raises:
            SuggestionError: The request failed, or the optimizer returned
                something that does not fit the search space.

        """
        url = f"{self.server_url}/api/v1/experiments/{experiment.name}/suggestions"
        request = SuggestionRequest(
            parameters=experiment.spec.parameters,
            constraints=experiment.spec.constraints,
            optimization=experiment.spec.optimization,
        )
        try:
            response = await self._client.post(url, json=request.model_dump(by_alias=True))
            _ = response.raise_for_status()
            result = SuggestionResponse.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            # Try to get error detail from response
            try:
                detail = ErrorResponse.model_validate(e.response.json()).detail
            except (ValidationError, ValueError):
                detail = str(e)
            msg = f"Suggestion service error: {detail}"
            raise SuggestionError(msg) from e
        except httpx.RequestError as e:
            msg = f"Connection error: {e}"
            raise SuggestionError(msg) from e
        except (ValidationError, ValueError) as e:
            msg = f"Malformed suggestion response: {e}"
            raise SuggestionError(msg) from e

        assignments = result.assignments
        try:
            experiment.check_assignments({a.name: a.value for a in assignments})
        except InvalidAssignmentError as e:
            msg = f"Suggestion does not fit experiment {experiment.name}: {e}"
            raise SuggestionError(msg) from e
        logger.info(
            "Suggested %s for %s",
            ", ".join(f"{a.name}={a.value}" for a in assignments),
            experiment.name,
        )
        return assignments


class RandomSuggester:
    """Draws uniform integer assignments, rejecting ones that break constraints."""

    def __init__(self, seed: int | None = None, max_draws: int = MAX_DRAWS) -> None:
        self._rng = random.Random(seed)  # noqa: S311
        self.max_draws = max_draws

    async def suggest(self, experiment: Experiment) -> list[Assignment]:
        for _ in range(self.max_draws):
            candidate = {
                p.name: self._rng.randint(p.min, p.max) for p in experiment.spec.parameters
            }
            if all(c.is_satisfied(candidate) for c in experiment.spec.constraints):
                return [Assignment(name=name, value=value) for name, value in candidate.items()]
        msg = f"No assignment satisfying the constraints of {experiment.name} after {self.max_draws} draws"
        raise SuggestionError(msg)


def new_trial(
    experiment: Experiment,
    assignments: list[Assignment],
    name: Optional[str] = None,
    index: int = 0,
) -> Trial:
    """Create a pending trial from the experiment's template.

    The template's spec supplies defaults (setup tasks, readiness gates,
    timing hints); the assignments are set on top.
    """
    template = experiment.spec.template
    spec = template.spec.clone()
    spec.experiment_ref = experiment.reference()
    spec.assignments = [a.clone() for a in assignments]
    # Resolved state is always built fresh for a new trial
    spec.patch_operations = []
    spec.values = []
    spec.readiness_checks = []

    labels = {**template.labels, "knobs/experiment": experiment.name}
    return Trial(
        name=name or f"{experiment.name}-{index:03d}",
        namespace=template.namespace or experiment.namespace,
        labels=labels,
        spec=spec,
    )
