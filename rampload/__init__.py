"""
rampload: staged load generation with metric thresholds.

Virtual users run a scenario while a scheduler ramps their number
through configured stages; every operation feeds a shared metrics
registry whose final snapshot is gated by thresholds and rendered as a
summary.
"""

from rampload.config import RunConfig
from rampload.exceptions import ConfigurationError, RamploadError, ThresholdSyntaxError
from rampload.metrics import MetricKind, MetricsRegistry
from rampload.runner import Run, RunOutcome, run_scenario
from rampload.scenario import FunctionStep, RequestStep, Scenario, Step, StepResult, between, check, constant
from rampload.stages import RampProfile, Stage
from rampload.thresholds import parse_thresholds

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "FunctionStep",
    "MetricKind",
    "MetricsRegistry",
    "RamploadError",
    "RampProfile",
    "RequestStep",
    "Run",
    "RunConfig",
    "RunOutcome",
    "Scenario",
    "Stage",
    "Step",
    "StepResult",
    "ThresholdSyntaxError",
    "between",
    "check",
    "constant",
    "parse_thresholds",
    "run_scenario",
]
