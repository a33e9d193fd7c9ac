# Copyright (c) Syntropy Systems
"""Error types raised across the trial lifecycle.

Errors fall into four groups:

- retryable: the operation may succeed if attempted again (network timeouts,
  apply conflicts, a readiness check that is not yet satisfied)
- permanent: attempting again cannot help (template evaluation, malformed
  queries, non-scalar metric results, selectors matching nothing)
- exhausted: a retryable operation ran out of attempts
- system: persistence conflicts that the caller resolves with a fresh
  read-modify-write cycle
"""

from __future__ import annotations


class KnobsError(Exception):
    """Base class for knobs errors."""


class RetryableError(KnobsError):
    """A transient failure; the attempt counts against the remaining attempts."""


class PermanentError(KnobsError):
    """A failure that no amount of retrying will fix."""


class TemplateError(PermanentError):
    """A template could not be evaluated against the trial."""


class SelectorError(PermanentError):
    """A selector matched no objects where at least one was required."""


class MetricShapeError(PermanentError):
    """A metric source returned data that does not reduce to a single number."""


class AttemptsExhaustedError(KnobsError):
    """A retryable operation ran out of attempts.

    Attributes:
        last_error: The failure from the final attempt.

    """

    def __init__(self, message: str, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class StatusConflictError(KnobsError):
    """The stored object changed since it was last read."""


class TerminalTrialError(KnobsError):
    """An attempt was made to mutate a trial that already finished."""


class InvalidAssignmentError(KnobsError):
    """Assignments do not fit the experiment's search space."""


class SuggestionError(KnobsError):
    """The suggestion service could not produce an assignment."""


class NotFoundError(KnobsError):
    """A requested object does not exist."""
