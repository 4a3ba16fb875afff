"""
Virtual user runtime.

A :class:`VirtualUser` owns one worker thread that runs the scenario in
a loop until it is retired or stopped.  Everything it observes ends up
in the shared metrics registry; virtual users never talk to each other.

Per step the runtime records:

- a duration sample (ms) in the step's trend (``op_duration`` by default)
- ``ops_total`` (counter) and ``ops_failed`` (rate)
- one rate sample per check under the check's name and under ``checks``
- one sample in the scenario's error metric, if it names one, for steps
  that have checks

A step whose ``when`` predicate returns false is skipped and records
nothing.  A sample the registry refuses because its name is already
registered with another kind is logged and ends the iteration; it never
takes the worker thread down.

Per iteration it records ``iterations`` and ``iteration_duration``.

Two cancellation signals exist.  ``retire()`` is what the scheduler
sends when concurrency goes down: remaining pauses are skipped, the
current iteration's steps still run, and no new iteration starts.
``stop()`` is what a run sends when it shuts down: the current step is
allowed to finish, the rest of the iteration is skipped.  Neither ever
interrupts a request in flight.
"""

from __future__ import annotations

import logging
import threading
import time

from rampload.exceptions import MetricKindError
from rampload.metrics import MetricsRegistry
from rampload.scenario import IterationContext, Scenario, Step, StepResult, ThinkTime
from rampload.transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_DURATION_METRIC = "op_duration"


class VirtualUser:
    """
    One simulated client executing a scenario in a loop.

    Attributes:
        vu_id: Identifier unique within the run.
        iteration_count: Iterations started so far.
        exhausted: ``True`` once the per-VU iteration budget is used up.
    """

    def __init__(
        self,
        vu_id: int,
        scenario: Scenario,
        registry: MetricsRegistry,
        *,
        transport: Transport | None = None,
        iterations: int | None = None,
        request_timeout: float = 60.0,
    ):
        self.vu_id = vu_id
        self.scenario = scenario
        self.registry = registry
        self.transport = transport
        self.iterations = iterations
        self.request_timeout = request_timeout
        self.iteration_count = 0
        self.exhausted = False
        self._retired = threading.Event()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run, name=f"vu-{self.vu_id}", daemon=True
        )
        self._thread.start()

    def retire(self) -> None:
        """Finish the current iteration without pauses, then exit."""
        self._retired.set()

    def stop(self) -> None:
        """Finish the current step, then exit."""
        self._stopped.set()
        self._retired.set()

    @property
    def retired(self) -> bool:
        return self._retired.is_set()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker thread; returns ``True`` if it has exited."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    # ------------------------------------------------------------------
    # Iteration loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        logger.debug("VU %d started", self.vu_id)
        try:
            while not self._retired.is_set():
                if self.iterations is not None and self.iteration_count >= self.iterations:
                    self.exhausted = True
                    break
                self.run_iteration()
                self._pause(self.scenario.iteration_pause)
        finally:
            logger.debug(
                "VU %d exited after %d iterations", self.vu_id, self.iteration_count
            )

    def run_iteration(self) -> None:
        """Run every step of the scenario once, in order."""
        context = IterationContext(
            vu_id=self.vu_id,
            iteration=self.iteration_count,
            registry=self.registry,
            cancel=self._retired,
            transport=self.transport,
            request_timeout=self.request_timeout,
        )
        self.iteration_count += 1
        started = time.perf_counter()

        for step in self.scenario.steps:
            if self._stopped.is_set():
                break
            if not step.should_run(context):
                logger.debug("VU %d: step %r skipped", self.vu_id, step.name)
                continue
            result = self._run_step(step, context)
            if result is None:
                # Later steps may depend on state this one never produced.
                break
            self._pause(step.think_time or self.scenario.think_time)

        self.registry.add_counter("iterations")
        self.registry.add_trend("iteration_duration", (time.perf_counter() - started) * 1000.0)

    def _run_step(self, step: Step, context: IterationContext) -> StepResult | None:
        started = time.perf_counter()
        try:
            result = step.execute(context)
        except Exception as exc:
            elapsed = time.perf_counter() - started
            logger.warning(
                "VU %d: step %r raised %s: %s", self.vu_id, step.name, type(exc).__name__, exc
            )
            failed = StepResult(success=False, elapsed=elapsed, error=str(exc))
            self._guarded(step, self._record, step, failed)
            if step.checks:
                self._guarded(step, self._record_error, False)
            return None

        if not self._guarded(step, self._record, step, result):
            return None
        if not self._guarded(step, self._record_checks, step, result, context):
            return None
        return result

    def _guarded(self, step: Step, record, *args) -> bool:
        try:
            record(*args)
        except MetricKindError as exc:
            logger.error("VU %d: step %r could not record metrics: %s", self.vu_id, step.name, exc)
            return False
        return True

    def _record_checks(self, step: Step, result: StepResult, context: IterationContext) -> None:
        if not step.checks:
            return
        all_passed = result.success
        for step_check in step.checks:
            passed = step_check.evaluate(result, context)
            all_passed = all_passed and passed
            self.registry.add_rate(step_check.name, passed)
            self.registry.add_rate("checks", passed)
        self._record_error(all_passed)

    def _record_error(self, passed: bool) -> None:
        if self.scenario.error_metric is not None:
            self.registry.add_rate(self.scenario.error_metric, not passed)

    def _record(self, step: Step, result: StepResult) -> None:
        self.registry.add_trend(step.metric or DEFAULT_DURATION_METRIC, result.elapsed * 1000.0)
        self.registry.add_counter("ops_total")
        self.registry.add_rate("ops_failed", not result.success)
        if not result.success:
            logger.debug("VU %d: step %r failed: %s", self.vu_id, step.name, result.error)

    def _pause(self, think_time: ThinkTime | None) -> None:
        if think_time is None or self._retired.is_set():
            return
        self._retired.wait(think_time())

    def __repr__(self) -> str:
        return f"VirtualUser(id={self.vu_id}, iterations={self.iteration_count})"
