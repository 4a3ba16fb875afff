"""
Exception hierarchy for the load engine.

Only configuration and infrastructure faults surface to callers as
exceptions.  Failures inside a virtual user's iteration are recorded as
metric samples instead and never reach this hierarchy.
"""

from __future__ import annotations


class RamploadError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(RamploadError):
    """A run was configured with invalid stages, thresholds or settings."""


class ThresholdSyntaxError(ConfigurationError):
    """A threshold expression could not be parsed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid threshold expression {expression!r}: {reason}")


class MetricKindError(RamploadError):
    """A sample was recorded against a metric registered with another kind."""

    def __init__(self, name: str, registered: str, attempted: str):
        self.name = name
        self.registered = registered
        self.attempted = attempted
        super().__init__(
            f"Metric {name!r} is a {registered}; cannot record a {attempted} sample"
        )


class ScenarioLoadError(ConfigurationError):
    """A scenario reference (``module:attribute``) could not be resolved."""
