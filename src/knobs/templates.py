# Copyright (c) Syntropy Systems
"""Template evaluation for patches, Helm values and local metrics.

Templates are Jinja2 rendered in a sandbox with strict undefined handling, so
a reference to a parameter the trial does not assign is an error rather than
an empty string.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from jinja2 import StrictUndefined, TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment

from knobs.errors import TemplateError

if TYPE_CHECKING:
    from knobs.models.base import JSONValue
    from knobs.models.trial import Trial


def _percent(value: float, pct: float) -> int:
    """Return ``pct`` percent of ``value``, truncated to an integer."""
    return int(value * pct / 100)


def _environment() -> SandboxedEnvironment:
    env = SandboxedEnvironment(
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.filters["percent"] = _percent
    return env


_ENV = _environment()

# Errors a template can raise while evaluating, besides Jinja2's own
_EVALUATION_ERRORS = (JinjaTemplateError, TypeError, ValueError, ArithmeticError, LookupError)


def assignment_context(trial: Trial) -> dict[str, object]:
    """Variables visible to patch and Helm value templates.

    Assignments are bound both as top-level names and under ``parameters``.
    """
    assignments = trial.assignment_map()
    context: dict[str, object] = dict(assignments)
    context["parameters"] = assignments
    context["trial"] = {
        "name": trial.name,
        "namespace": trial.namespace,
        "labels": dict(trial.labels),
    }
    return context


def render(source: str, context: dict[str, object]) -> str:
    """Render template text.

    Raises:
        TemplateError: The template is malformed or references an undefined name.

    """
    try:
        return _ENV.from_string(source).render(context)
    except _EVALUATION_ERRORS as e:
        msg = f"Template evaluation failed: {e}"
        raise TemplateError(msg) from e


def evaluate(expression: str, context: dict[str, object]) -> JSONValue:
    """Evaluate a single expression such as ``duration`` or ``replicas * 2``.

    Text containing ``{{`` is rendered as a full template instead.

    Raises:
        TemplateError: The expression is malformed or references an undefined name.

    """
    if "{{" in expression or "{%" in expression:
        return render(expression, context).strip()
    try:
        compiled = _ENV.compile_expression(expression, undefined_to_none=False)
        result = compiled(**context)
    except _EVALUATION_ERRORS as e:
        msg = f"Expression '{expression}' failed: {e}"
        raise TemplateError(msg) from e
    if isinstance(result, StrictUndefined):
        msg = f"Expression '{expression}' is undefined"
        raise TemplateError(msg)
    return result  # type: ignore[no-any-return]
