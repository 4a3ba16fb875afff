"""
Run orchestration.

A :class:`Run` owns one ramp profile, one metrics registry, the
thresholds and the wall-clock start/end of a load test.  It wires the
scheduler to virtual users, optionally evaluates thresholds while the
ramp is in progress, drains the population when the ramp ends and
produces the final summary.

Exit codes follow a three-state convention so that CI can distinguish
"thresholds breached" from "the run itself failed":

- ``0`` -- run completed and every threshold passed
- ``1`` -- at least one threshold failed (including abort-on-fail)
- ``2`` -- the run was aborted or errored
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rampload.config import RunConfig
from rampload.metrics import ENGINE_METRICS, MetricsRegistry
from rampload.scenario import Scenario
from rampload.scheduler import RunState, StageScheduler
from rampload.summary import RunInfo, build_summary
from rampload.thresholds import Threshold, ThresholdResult, ThresholdStatus, evaluate
from rampload.transport import Transport
from rampload.vu import VirtualUser

logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_RUN_ERROR = 2

_BUILTIN_METRICS = ("ops_total", "ops_failed", "iterations", "iteration_duration")


@dataclass(frozen=True)
class RunOutcome:
    """Final state, threshold verdicts and summary of a finished run."""

    state: RunState
    results: list[ThresholdResult]
    summary: dict[str, Any]
    aborted_by_threshold: bool = False

    @property
    def thresholds_passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def exit_code(self) -> int:
        if self.aborted_by_threshold:
            return EXIT_THRESHOLD_BREACH
        if self.state is not RunState.COMPLETE:
            return EXIT_RUN_ERROR
        return EXIT_PASS if self.thresholds_passed else EXIT_THRESHOLD_BREACH


class Run:
    """
    One load test from first tick to final summary.

    Construction validates the configuration, so a bad profile or
    threshold raises :class:`~rampload.exceptions.ConfigurationError`
    before any virtual user exists.
    """

    def __init__(
        self,
        scenario: Scenario,
        config: RunConfig,
        *,
        transport: Transport | None = None,
        registry: MetricsRegistry | None = None,
    ):
        config.validate()
        self.scenario = scenario
        self.config = config
        self.transport = transport
        self.registry = registry or MetricsRegistry(trend_sample_limit=config.trend_sample_limit)
        self.scheduler = StageScheduler(
            config.ramp_profile,
            self._spawn,
            tick_interval=config.tick_interval,
            iterations=config.iterations,
        )
        self.started_at: datetime | None = None
        self.ended_at: datetime | None = None
        self.abort_reason: str | None = None
        self._stop_event = threading.Event()
        self._hard_stop = False
        self._aborted_by_threshold = False

    @property
    def state(self) -> RunState:
        return self.scheduler.state

    def _spawn(self, vu_id: int) -> VirtualUser:
        return VirtualUser(
            vu_id,
            self.scenario,
            self.registry,
            transport=self.transport,
            iterations=self.config.iterations,
            request_timeout=self.config.request_timeout,
        )

    def stop(self, reason: str = "stopped by caller") -> None:
        """Ask the run to end early; VUs finish their current step, then exit."""
        if self.abort_reason is None:
            self.abort_reason = reason
        self._hard_stop = True
        self._stop_event.set()

    def _live_thresholds(self) -> list[Threshold]:
        return [
            threshold
            for threshold in self.config.thresholds
            if threshold.abort_on_fail or self.config.abort_on_fail
        ]

    def _check_live(self, _elapsed: float) -> None:
        live = self._live_thresholds()
        if not live:
            return
        for result in evaluate(self.registry.snapshot(), live):
            if result.status is ThresholdStatus.FAIL:
                logger.error("Threshold breached, aborting run: %s", result.reason)
                self._aborted_by_threshold = True
                self.stop(f"threshold {result.threshold.description} failed")
                return

    def execute(self) -> RunOutcome:
        """Run the ramp to completion and return the outcome."""
        for name in _BUILTIN_METRICS:
            self.registry.register(name, ENGINE_METRICS[name])

        self.started_at = datetime.now(timezone.utc)
        self.registry.start()
        logger.info("Run started: scenario %r", self.scenario.name)

        try:
            self.scheduler.run(self._stop_event, on_tick=self._check_live)
        except KeyboardInterrupt:
            self.stop("interrupted")
        finally:
            abandoned = self.scheduler.drain(self.config.graceful_stop, hard=self._hard_stop)
            self.registry.close()
            self.ended_at = datetime.now(timezone.utc)

        if self.abort_reason is not None:
            self.scheduler.state = RunState.ABORTED
        if abandoned:
            logger.warning("%d VUs abandoned; their late samples are excluded", len(abandoned))

        snapshot = self.registry.snapshot()
        results = evaluate(snapshot, self.config.thresholds)
        summary = build_summary(
            snapshot,
            results,
            RunInfo(
                scenario=self.scenario.name,
                state=self.scheduler.state.value,
                started_at=self.started_at,
                ended_at=self.ended_at,
                peak_vus=self.scheduler.peak_vus,
                abort_reason=self.abort_reason,
            ),
        )
        outcome = RunOutcome(
            state=self.scheduler.state,
            results=results,
            summary=summary,
            aborted_by_threshold=self._aborted_by_threshold,
        )
        logger.info(
            "Run %s in %.2fs: %s ops, thresholds %s",
            outcome.state.value,
            summary["run"]["duration_s"],
            summary["operations"]["total"],
            "passed" if outcome.thresholds_passed else "failed",
        )
        return outcome


def run_scenario(
    scenario: Scenario,
    config: RunConfig,
    *,
    transport: Transport | None = None,
) -> RunOutcome:
    """Convenience wrapper: build a :class:`Run` and execute it."""
    return Run(scenario, config, transport=transport).execute()
