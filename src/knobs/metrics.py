# Copyright (c) Syntropy Systems
"""Collect metric values for a finished trial run."""
from __future__ import annotations

import asyncio
import functools
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, cast

import httpx
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError
from jsonpath_ng.ext import parse as parse_jsonpath

from knobs.errors import (
    AttemptsExhaustedError,
    MetricShapeError,
    PermanentError,
    RetryableError,
    SelectorError,
)
from knobs.models.experiment import MetricType
from knobs.models.trial import Value
from knobs.retry import RetryPolicy, run_with_attempts
from knobs.templates import evaluate

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from knobs.cluster import ClusterClient
    from knobs.models.base import JSONValue
    from knobs.models.cluster import ClusterObject
    from knobs.models.experiment import Experiment, Metric
    from knobs.models.trial import Trial

logger = logging.getLogger(__name__)

# Reason codes recorded on the Failed condition
REASON_QUERY_INVALID = "MetricQueryInvalid"
REASON_EXHAUSTED = "MetricFailed"


@dataclass(frozen=True)
class Observation:
    value: float
    error: Optional[float] = None


@dataclass
class MetricFailure:
    """A metric that could not be collected.

    ``reason`` tells a non-retryable failure (``MetricQueryInvalid``) apart
    from one that ran out of attempts (``MetricFailed``).
    """

    metric: str
    reason: str
    message: str


def to_float(raw: object, what: str) -> float:
    """Convert a query result to a float, rejecting non-scalars."""
    if isinstance(raw, (bool, list, dict)):
        msg = f"{what} is not a scalar: {raw!r}"
        raise MetricShapeError(msg)
    try:
        return float(cast("str", raw))
    except (TypeError, ValueError) as e:
        msg = f"{what} is not a number: {raw!r}"
        raise MetricShapeError(msg) from e


def format_value(value: float) -> str:
    """Format an observed value the way it is stored on the trial."""
    return repr(float(value))


class MetricSource:
    """Evaluates one metric; one subclass per metric type."""

    def __init__(self, metric: Metric, trial: Trial) -> None:
        self.metric = metric
        self.trial = trial

    async def observe(self) -> Observation:
        raise NotImplementedError


class LocalSource(MetricSource):
    """Evaluates the query as an expression over the trial itself."""

    def context(self) -> dict[str, object]:
        status = self.trial.status
        context: dict[str, object] = {
            "trial": self.trial.model_dump(),
            "parameters": self.trial.assignment_map(),
            "start_time": status.start_time,
            "completion_time": status.completion_time,
        }
        if status.start_time is not None and status.completion_time is not None:
            context["duration"] = (status.completion_time - status.start_time).total_seconds()
        return context

    async def observe(self) -> Observation:
        context = self.context()
        value = to_float(evaluate(self.metric.query, context), f"Metric '{self.metric.name}'")
        error = None
        if self.metric.error_query:
            error = to_float(
                evaluate(self.metric.error_query, context), f"Metric '{self.metric.name}' error"
            )
        return Observation(value=value, error=error)


class _EndpointSource(MetricSource):
    """Base for metrics fetched over HTTP from a service matched by selector."""

    def __init__(
        self,
        metric: Metric,
        trial: Trial,
        cluster: ClusterClient,
        http: httpx.AsyncClient,
    ) -> None:
        super().__init__(metric, trial)
        self.cluster = cluster
        self.http = http

    async def base_url(self) -> str:
        """Resolve the first matching service into a URL.

        Raises:
            SelectorError: No service matches the metric's selector.

        """
        namespace = self.trial.target_namespace()
        services = await self.cluster.list("Service", namespace, self.metric.selector)
        if not services:
            msg = f"No service in '{namespace}' matches selector '{self.metric.selector}'"
            raise SelectorError(msg)
        service = services[0]
        port = self._port(service)
        return f"http://{service.name}.{service.namespace}:{port}{self.metric.path}"

    def _port(self, service: ClusterObject) -> int:
        ports = service.spec.get("ports")
        port_list = cast("list[dict[str, JSONValue]]", ports if isinstance(ports, list) else [])
        wanted = self.metric.port
        if isinstance(wanted, int):
            return wanted
        for entry in port_list:
            if wanted is None or entry.get("name") == wanted:
                return int(cast("int", entry.get("port", 80)))
        if wanted is None:
            return 80
        msg = f"Service {service.name} has no port named '{wanted}'"
        raise SelectorError(msg)

    async def fetch(self, url: str, params: dict[str, str] | None = None) -> JSONValue:
        """GET a JSON document, sorting failures into retryable and permanent."""
        try:
            response = await self.http.get(url, params=params)
            _ = response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            msg = f"{url} returned HTTP {status}"
            if status >= 500 or status == 429:
                raise RetryableError(msg) from e
            raise PermanentError(msg) from e
        except httpx.RequestError as e:
            msg = f"Connection error fetching {url}: {e}"
            raise RetryableError(msg) from e
        try:
            return cast("JSONValue", response.json())
        except ValueError as e:
            msg = f"{url} did not return JSON"
            raise MetricShapeError(msg) from e


class PrometheusSource(_EndpointSource):
    """Runs a PromQL query; the result must be a single number."""

    async def _query(self, base: str, query: str) -> float:
        params = {"query": query}
        completion = self.trial.status.completion_time
        if completion is not None:
            params["time"] = str(completion.timestamp())
        body = await self.fetch(f"{base}/api/v1/query", params)
        if not isinstance(body, dict):
            msg = "Prometheus response is not an object"
            raise MetricShapeError(msg)
        if body.get("status") != "success":
            msg = f"Prometheus query failed: {body.get('errorType')}: {body.get('error')}"
            raise PermanentError(msg)
        data = body.get("data")
        if not isinstance(data, dict):
            msg = "Prometheus response has no data"
            raise MetricShapeError(msg)

        result_type = data.get("resultType")
        result = data.get("result")
        if result_type == "scalar" and isinstance(result, list) and len(result) == 2:  # noqa: PLR2004
            value = to_float(result[1], f"Metric '{self.metric.name}'")
        elif result_type == "vector" and isinstance(result, list):
            if not result:
                msg = f"Query '{query}' returned no samples yet"
                raise RetryableError(msg)
            if len(result) > 1:
                msg = f"Query '{query}' returned {len(result)} samples, expected a scalar"
                raise MetricShapeError(msg)
            sample = result[0]
            pair = sample.get("value") if isinstance(sample, dict) else None
            if not isinstance(pair, list) or len(pair) != 2:  # noqa: PLR2004
                msg = f"Query '{query}' returned a malformed sample"
                raise MetricShapeError(msg)
            value = to_float(pair[1], f"Metric '{self.metric.name}'")
        else:
            msg = f"Query '{query}' returned a {result_type}, expected a scalar"
            raise MetricShapeError(msg)

        if math.isnan(value):
            msg = f"Query '{query}' returned NaN"
            raise RetryableError(msg)
        return value

    async def observe(self) -> Observation:
        base = await self.base_url()
        value = await self._query(base, self.metric.query)
        error = None
        if self.metric.error_query:
            error = await self._query(base, self.metric.error_query)
        return Observation(value=value, error=error)


def normalize_jsonpath(expression: str) -> str:
    """Accept cluster-style ``{.a.b}`` expressions as well as ``$.a.b``."""
    expr = expression.strip()
    if expr.startswith("{") and expr.endswith("}"):
        expr = expr[1:-1].strip()
    if expr.startswith("."):
        expr = "$" + expr
    return expr


class JSONPathSource(_EndpointSource):
    """Fetches a JSON document and extracts the value with a JSONPath query."""

    def _extract(self, document: JSONValue, expression: str) -> float:
        try:
            compiled = parse_jsonpath(normalize_jsonpath(expression))
        except (JsonPathLexerError, JsonPathParserError) as e:
            msg = f"Invalid JSONPath expression '{expression}': {e}"
            raise MetricShapeError(msg) from e
        matches = [m.value for m in compiled.find(document)]
        if not matches:
            msg = f"JSONPath '{expression}' matched nothing yet"
            raise RetryableError(msg)
        if len(matches) > 1:
            msg = f"JSONPath '{expression}' matched {len(matches)} values, expected one"
            raise MetricShapeError(msg)
        return to_float(matches[0], f"Metric '{self.metric.name}'")

    async def observe(self) -> Observation:
        document = await self.fetch(await self.base_url())
        value = self._extract(document, self.metric.query)
        error = None
        if self.metric.error_query:
            error = self._extract(document, self.metric.error_query)
        return Observation(value=value, error=error)


async def _observe_into(source: MetricSource, value: Value) -> Observation:
    observation = await source.observe()
    value.value = format_value(observation.value)
    if observation.error is not None:
        value.error = format_value(observation.error)
    return observation


class MetricCollector:
    """Collects every metric of an experiment for one trial."""

    def __init__(
        self,
        cluster: ClusterClient,
        http: httpx.AsyncClient | None = None,
        *,
        attempts: int = 3,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cluster = cluster
        self.http = http
        self.attempts = attempts
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def source(self, metric: Metric, trial: Trial) -> MetricSource:
        """Pick the evaluator for a metric's type."""
        if metric.type == MetricType.LOCAL:
            return LocalSource(metric, trial)
        if self.http is None:
            msg = f"Metric '{metric.name}' needs an HTTP client"
            raise PermanentError(msg)
        if metric.type == MetricType.PROMETHEUS:
            return PrometheusSource(metric, trial, self.cluster, self.http)
        return JSONPathSource(metric, trial, self.cluster, self.http)

    def prepare(self, experiment: Experiment, trial: Trial) -> None:
        """Make sure the trial has one value entry per metric, in experiment order."""
        existing = trial.value_map()
        trial.spec.values = [
            existing.get(m.name) or Value(name=m.name, attempts_remaining=self.attempts)
            for m in experiment.spec.metrics
        ]

    async def collect(
        self,
        experiment: Experiment,
        trial: Trial,
        on_change: Callable[[], None] | None = None,
    ) -> list[MetricFailure]:
        """Evaluate every metric once through, independently of the others.

        A metric that fails does not stop the rest from being collected.
        """
        self.prepare(experiment, trial)
        failures: list[MetricFailure] = []
        values = trial.value_map()

        for metric in experiment.spec.metrics:
            value = values[metric.name]
            if value.attempts_remaining == 0:
                if not value.value:
                    failures.append(
                        MetricFailure(metric.name, REASON_EXHAUSTED, "no attempts remaining")
                    )
                continue

            try:
                source = self.source(metric, trial)
                await run_with_attempts(
                    value,
                    functools.partial(_observe_into, source, value),
                    self.policy,
                    description=f"Metric {metric.name}",
                    on_change=on_change,
                    sleep=self._sleep,
                )
            except PermanentError as e:
                value.attempts_remaining = 0
                logger.warning("Metric %s cannot be collected: %s", metric.name, e)
                failures.append(MetricFailure(metric.name, REASON_QUERY_INVALID, str(e)))
                continue
            except AttemptsExhaustedError as e:
                logger.warning("Metric %s failed: %s", metric.name, e)
                failures.append(MetricFailure(metric.name, REASON_EXHAUSTED, str(e)))
                continue

            logger.info("Metric %s = %s", metric.name, value.value)

        return failures
