"""
Scenario building blocks: steps, checks and think time.

A scenario is an ordered list of steps that one virtual user runs per
iteration.  Each step is an object with a single ``execute`` method;
the engine only ever calls that method and never looks inside a step,
so callers can supply their own :class:`Step` subclasses next to the
two shipped here:

- :class:`FunctionStep` -- wraps any callable (custom protocols, fakes)
- :class:`RequestStep` -- one request through the run's transport

Values that one step produces for a later step (an order ID, a token)
are threaded through :attr:`IterationContext.vars`, which lives for a
single iteration only.

Key Concepts Demonstrated:
- Polymorphic step abstraction (abstract base, no downcasting)
- Locust-style ``constant`` / ``between`` think-time factories
- Checks that never raise: a crashing predicate is a failed check
"""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from rampload.exceptions import ConfigurationError
from rampload.metrics import ENGINE_METRICS, MetricKind, MetricsRegistry
from rampload.transport import Transport

logger = logging.getLogger(__name__)

ThinkTime = Callable[[], float]


def constant(seconds: float) -> ThinkTime:
    """Think time that always pauses for ``seconds``."""
    if seconds < 0:
        raise ConfigurationError(f"Think time must be >= 0, got {seconds}")
    return lambda: seconds


def between(min_seconds: float, max_seconds: float) -> ThinkTime:
    """Think time drawn uniformly from ``[min_seconds, max_seconds]``."""
    if min_seconds < 0 or max_seconds < min_seconds:
        raise ConfigurationError(
            f"Invalid think time range: between({min_seconds}, {max_seconds})"
        )
    return lambda: random.uniform(min_seconds, max_seconds)


@dataclass(frozen=True)
class StepResult:
    """
    What one step reports back to the virtual user.

    Attributes:
        success: ``False`` for transport errors, unexpected responses or
            any other failure the step detected.
        elapsed: Duration of the unit of work in seconds.
        error: Short description of the failure, if any.
        payload: Response body or any value checks should see.
        status: Protocol status code, when the step has one.
    """

    success: bool
    elapsed: float
    error: str | None = None
    payload: Any = None
    status: int | None = None

    def json(self) -> dict[str, Any]:
        """Return the payload as a JSON object, or ``{}`` if it is not one."""
        data = self.payload
        if isinstance(data, (str, bytes, bytearray)):
            try:
                data = json.loads(data)
            except ValueError:
                return {}
        if isinstance(data, dict):
            return data
        return {}


@dataclass(frozen=True)
class Check:
    """
    Named boolean assertion evaluated against one step result.

    With ``with_context`` set the predicate is called as
    ``predicate(result, context)``, so it can compare the response with
    values an earlier step stored in :attr:`IterationContext.vars`.
    """

    name: str
    predicate: Callable[..., Any]
    with_context: bool = False

    def evaluate(self, result: StepResult, context: IterationContext | None = None) -> bool:
        try:
            if self.with_context:
                return bool(self.predicate(result, context))
            return bool(self.predicate(result))
        except Exception as exc:
            logger.debug("Check %r raised %s; counted as failed", self.name, exc)
            return False


@dataclass
class IterationContext:
    """
    Per-iteration state handed to every step.

    Attributes:
        vu_id: Identifier of the virtual user running the iteration.
        iteration: Zero-based iteration number for this virtual user.
        vars: Values threaded from earlier steps to later ones.
        transport: Request executor shared by the run.
        request_timeout: Default per-request timeout in seconds.
    """

    vu_id: int
    iteration: int
    registry: MetricsRegistry
    cancel: threading.Event
    transport: Transport | None = None
    request_timeout: float = 60.0
    vars: dict[str, Any] = field(default_factory=dict)

    def add_metric(self, name: str, kind: MetricKind | str, value: Any) -> None:
        """Record a custom metric sample (e.g. an ``errors`` rate)."""
        self.registry.record(name, MetricKind(kind), value)

    def pause(self, seconds: float) -> bool:
        """
        Sleep cooperatively.

        Returns ``False`` as soon as the virtual user is retired or
        stopped, ``True`` if the full pause elapsed.
        """
        if seconds <= 0:
            return not self.cancel.is_set()
        return not self.cancel.wait(seconds)


class Step(ABC):
    """
    One unit of work in a scenario.

    Attributes:
        name: Used in logs and as the default label of the step.
        checks: Assertions evaluated against the step result.
        metric: Trend receiving this step's duration; ``op_duration``
            when not set.
        think_time: Pause after this step, overriding the scenario's.
        when: Predicate of the iteration context; the step is skipped,
            recording nothing, when it returns false.
    """

    def __init__(
        self,
        name: str,
        *,
        checks: Iterable[Check] = (),
        metric: str | None = None,
        think_time: ThinkTime | None = None,
        when: Callable[[IterationContext], Any] | None = None,
    ):
        self.name = name
        self.checks = tuple(checks)
        self.metric = metric
        self.think_time = think_time
        self.when = when

    def should_run(self, context: IterationContext) -> bool:
        if self.when is None:
            return True
        try:
            return bool(self.when(context))
        except Exception as exc:
            logger.warning("Step %r: run condition raised %s; step skipped", self.name, exc)
            return False

    @abstractmethod
    def execute(self, context: IterationContext) -> StepResult:
        """Run the unit of work and describe its outcome."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class FunctionStep(Step):
    """
    Step backed by a plain callable taking the iteration context.

    The callable may return a :class:`StepResult` (used verbatim) or any
    other value, whose truthiness decides success; ``None`` counts as
    success.  Elapsed time is measured around the call in the latter case.
    """

    def __init__(self, name: str, func: Callable[[IterationContext], Any], **kwargs: Any):
        super().__init__(name, **kwargs)
        self.func = func

    def execute(self, context: IterationContext) -> StepResult:
        started = time.perf_counter()
        outcome = self.func(context)
        if isinstance(outcome, StepResult):
            return outcome
        elapsed = time.perf_counter() - started
        success = outcome is None or bool(outcome)
        return StepResult(
            success=success,
            elapsed=elapsed,
            error=None if success else f"{self.name} reported failure",
            payload=outcome,
        )


Resolvable = Any  # a value, or a callable taking the IterationContext


def _resolve(value: Resolvable, context: IterationContext) -> Any:
    return value(context) if callable(value) else value


class RequestStep(Step):
    """
    Step that performs one request through the run's transport.

    ``url``, ``body`` and ``headers`` may each be a callable of the
    iteration context, which is how a step uses an identifier stored by
    an earlier step.  Dict and list bodies are sent as JSON.

    Besides the per-step metrics every step gets, request steps record
    the built-in HTTP metrics ``http_reqs``, ``http_req_duration`` (ms)
    and ``http_req_failed``.
    """

    def __init__(
        self,
        name: str,
        method: str,
        url: Resolvable,
        *,
        body: Resolvable = None,
        headers: Resolvable = None,
        expected_status: int | Sequence[int] = (200, 201, 202, 204),
        timeout: float | None = None,
        on_response: Callable[[IterationContext, StepResult], None] | None = None,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        self.method = method.upper()
        self.url = url
        self.body = body
        self.headers = headers
        if isinstance(expected_status, int):
            expected_status = (expected_status,)
        self.expected_status = frozenset(expected_status)
        self.timeout = timeout
        self.on_response = on_response

    def _encode(self, body: Any, headers: dict[str, str]) -> str | bytes | None:
        if body is None or isinstance(body, (str, bytes)):
            return body
        headers.setdefault("Content-Type", "application/json")
        return json.dumps(body)

    def execute(self, context: IterationContext) -> StepResult:
        if context.transport is None:
            raise ConfigurationError(f"Request step {self.name!r} needs a transport")

        headers: dict[str, str] = dict(_resolve(self.headers, context) or {})
        body = self._encode(_resolve(self.body, context), headers)
        url = _resolve(self.url, context)
        timeout = self.timeout if self.timeout is not None else context.request_timeout

        response = context.transport.execute(self.method, url, body, headers, timeout)

        if response.error is not None:
            error = response.error
        elif response.status not in self.expected_status:
            error = f"Expected {sorted(self.expected_status)}, got {response.status}"
        else:
            error = None

        result = StepResult(
            success=error is None,
            elapsed=response.elapsed,
            error=error,
            payload=response.body,
            status=response.status,
        )

        registry = context.registry
        registry.add_counter("http_reqs")
        registry.add_trend("http_req_duration", response.elapsed * 1000.0)
        registry.add_rate("http_req_failed", not result.success)

        if self.on_response is not None and result.success:
            self.on_response(context, result)
        return result


@dataclass
class Scenario:
    """
    Ordered steps one virtual user executes per iteration.

    Attributes:
        name: Label used in logs and reports.
        steps: Executed strictly in order within an iteration.
        think_time: Default pause after each step; a step's own
            ``think_time`` wins.
        iteration_pause: Pause after the last step before the next
            iteration starts.
        error_metric: Rate receiving one sample per step that has checks:
            true when the step failed or any of its checks did.

    Check names, step metrics and the error metric share the registry
    with the engine's own metrics, so none of them may reuse an engine
    metric name or each other's name.
    """

    name: str
    steps: Sequence[Step]
    think_time: ThinkTime | None = None
    iteration_pause: ThinkTime | None = None
    error_metric: str | None = None

    def __post_init__(self) -> None:
        self.steps = tuple(self.steps)
        if not self.steps:
            raise ConfigurationError(f"Scenario {self.name!r} has no steps")
        for step in self.steps:
            if not isinstance(step, Step):
                raise ConfigurationError(
                    f"Scenario {self.name!r} contains a non-step entry: {step!r}"
                )
        self._validate_metric_names()

    def _validate_metric_names(self) -> None:
        check_names = {c.name for step in self.steps for c in step.checks}
        step_metrics = {step.metric for step in self.steps if step.metric}

        def reject(kind: str, name: str, reason: str) -> None:
            raise ConfigurationError(f"Scenario {self.name!r}: {kind} {name!r} {reason}")

        for name in sorted(check_names):
            if name in ENGINE_METRICS:
                reject("check", name, "reuses an engine metric name")
            if name in step_metrics:
                reject("check", name, "is also used as a step metric")
        for name in sorted(step_metrics):
            if name in ENGINE_METRICS and name != "op_duration":
                reject("step metric", name, "reuses an engine metric name")
        if self.error_metric is not None:
            if self.error_metric in ENGINE_METRICS:
                reject("error metric", self.error_metric, "reuses an engine metric name")
            if self.error_metric in check_names or self.error_metric in step_metrics:
                reject("error metric", self.error_metric, "is also used as a check or step metric")


def check(name: str, predicate: Callable[..., Any], *, with_context: bool = False) -> Check:
    """Shorthand for building a :class:`Check`."""
    return Check(name=name, predicate=predicate, with_context=with_context)


def status_is(expected: int) -> Callable[[StepResult], bool]:
    """Predicate: the step's status equals ``expected``."""
    return lambda result: result.status == expected


def faster_than(milliseconds: float) -> Callable[[StepResult], bool]:
    """Predicate: the step finished within ``milliseconds``."""
    return lambda result: result.elapsed * 1000.0 < milliseconds


def json_field(key: str, predicate: Callable[[Any], Any] = bool) -> Callable[[StepResult], Any]:
    """Predicate on one field of a JSON object payload."""
    return lambda result: predicate(result.json().get(key))


def headers_with(token: str | None = None, extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Standard JSON request headers, optionally with a bearer token."""
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    headers.update(extra or {})
    return headers
