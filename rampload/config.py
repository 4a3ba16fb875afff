"""
Engine configuration.

Two layers live here:

1. **Process settings** -- class-based ``Config`` objects whose values
   come from environment variables with sensible defaults, selected by
   ``get_config`` using the ``RAMPLOAD_ENV`` variable.
2. **Run configuration** -- :class:`RunConfig`, the per-run surface
   (ramp profile, thresholds, initial VUs, graceful stop), usually read
   from a YAML run file with :func:`load_run_file`.

Key Concepts Demonstrated:
- Class-based configuration with inheritance for DRY defaults
- Environment-variable overrides for 12-factor deployability
- Fail-fast validation of run files before any virtual user starts
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from rampload.exceptions import ConfigurationError
from rampload.stages import RampProfile, parse_duration
from rampload.thresholds import Threshold, parse_thresholds


class Config:
    """
    Base (shared) settings.

    All environment-specific classes inherit from ``Config`` so that
    common defaults only need to be stated once.
    """

    # Seconds between scheduler reconciliations.
    TICK_INTERVAL: float = float(os.environ.get("RAMPLOAD_TICK_INTERVAL", "1.0"))

    # How long virtual users get to finish after the ramp ends.
    GRACEFUL_STOP: float = float(os.environ.get("RAMPLOAD_GRACEFUL_STOP", "30"))

    # Default per-request timeout for request steps.
    REQUEST_TIMEOUT: float = float(os.environ.get("RAMPLOAD_REQUEST_TIMEOUT", "60"))

    # Samples a trend keeps before percentiles become approximate.
    TREND_SAMPLE_LIMIT: int = int(os.environ.get("RAMPLOAD_TREND_SAMPLE_LIMIT", "100000"))

    # Base URL relative request-step URLs resolve against.
    TARGET_BASE_URL: str = os.environ.get("RAMPLOAD_TARGET_BASE_URL", "http://localhost:8080")

    LOG_LEVEL: str = os.environ.get("RAMPLOAD_LOG_LEVEL", "INFO")


class DevelopmentConfig(Config):
    """Local runs against a developer machine."""

    LOG_LEVEL: str = os.environ.get("RAMPLOAD_LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """
    Test-suite overrides.

    Short ticks and grace periods keep engine tests fast; the target URL
    points at a non-routable host so no test leaks real traffic.
    """

    TICK_INTERVAL: float = float(os.environ.get("TEST_RAMPLOAD_TICK_INTERVAL", "0.01"))
    GRACEFUL_STOP: float = float(os.environ.get("TEST_RAMPLOAD_GRACEFUL_STOP", "2"))
    REQUEST_TIMEOUT: float = float(os.environ.get("TEST_RAMPLOAD_REQUEST_TIMEOUT", "1"))
    TARGET_BASE_URL: str = os.environ.get("TEST_RAMPLOAD_TARGET_BASE_URL", "http://orders.test")


class ProductionConfig(Config):
    """CI and shared load-generation hosts."""

    LOG_LEVEL: str = os.environ.get("RAMPLOAD_LOG_LEVEL", "WARNING")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": Config,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the settings class for the given environment.

    Args:
        env: ``"development"``, ``"testing"`` or ``"production"``.  When
            *None*, ``RAMPLOAD_ENV`` is consulted.

    Returns:
        The matching ``Config`` subclass, or ``Config`` if the key is
        unrecognised.
    """
    if env is None:
        env = os.environ.get("RAMPLOAD_ENV", "default")
    return config.get(env, config["default"])


@dataclass
class RunConfig:
    """
    Everything one run needs besides the scenario and the transport.

    Attributes:
        ramp_profile: Stages the scheduler follows.
        thresholds: Pass/fail criteria evaluated at the end of the run.
        vus_initial: Virtual users running when the first stage starts.
        graceful_stop: Seconds VUs get to exit before being abandoned.
        iterations: Optional per-VU iteration budget.
        abort_on_fail: Evaluate thresholds on every tick and stop the
            run on the first failure.
        tick_interval: Seconds between scheduler reconciliations.
        request_timeout: Default timeout for request steps.
        trend_sample_limit: Memory bound for each trend metric.
    """

    ramp_profile: RampProfile
    thresholds: list[Threshold] = field(default_factory=list)
    vus_initial: int = 0
    graceful_stop: float = Config.GRACEFUL_STOP
    iterations: int | None = None
    abort_on_fail: bool = False
    tick_interval: float = Config.TICK_INTERVAL
    request_timeout: float = Config.REQUEST_TIMEOUT
    trend_sample_limit: int = Config.TREND_SAMPLE_LIMIT

    def __post_init__(self) -> None:
        if self.vus_initial != self.ramp_profile.start_target:
            self.ramp_profile = RampProfile(self.ramp_profile.stages, start_target=self.vus_initial)

    def validate(self) -> None:
        """
        Check cross-field invariants.

        Raises:
            ConfigurationError: On the first invalid value.
        """
        if self.vus_initial < 0:
            raise ConfigurationError(f"vus_initial must be >= 0, got {self.vus_initial}")
        if self.graceful_stop < 0:
            raise ConfigurationError(f"graceful_stop must be >= 0, got {self.graceful_stop}")
        if self.iterations is not None and self.iterations < 1:
            raise ConfigurationError(f"iterations must be >= 1, got {self.iterations}")
        if self.tick_interval <= 0:
            raise ConfigurationError(f"tick_interval must be > 0, got {self.tick_interval}")
        if self.request_timeout <= 0:
            raise ConfigurationError(f"request_timeout must be > 0, got {self.request_timeout}")
        if self.trend_sample_limit < 1:
            raise ConfigurationError("trend_sample_limit must be >= 1")
        if not self.ramp_profile.stages:
            raise ConfigurationError("Ramp profile has no stages")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], settings: type[Config] | None = None) -> RunConfig:
        """
        Build a run configuration from a parsed run file.

        Durations accept the same strings as stages (``"30s"``, ``"1m"``).

        Raises:
            ConfigurationError: If any field is missing or malformed.
        """
        settings = settings or get_config()
        if not isinstance(data, Mapping):
            raise ConfigurationError("Run configuration must be a mapping")

        stages = data.get("stages") or []
        if not isinstance(stages, list):
            raise ConfigurationError("'stages' must be a list")
        try:
            vus_initial = int(data.get("vus_initial", data.get("start_vus", 0)))
            iterations = data.get("iterations")
            iterations = int(iterations) if iterations is not None else None
            trend_sample_limit = int(data.get("trend_sample_limit", settings.TREND_SAMPLE_LIMIT))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid integer in run configuration: {exc}") from exc

        run_config = cls(
            ramp_profile=RampProfile.from_stages(stages, start_target=vus_initial),
            thresholds=parse_thresholds(data.get("thresholds")),
            vus_initial=vus_initial,
            graceful_stop=parse_duration(data.get("graceful_stop", settings.GRACEFUL_STOP)),
            iterations=iterations,
            abort_on_fail=bool(data.get("abort_on_fail", False)),
            tick_interval=parse_duration(data.get("tick_interval", settings.TICK_INTERVAL)),
            request_timeout=parse_duration(data.get("request_timeout", settings.REQUEST_TIMEOUT)),
            trend_sample_limit=trend_sample_limit,
        )
        run_config.validate()
        return run_config


def load_yaml(path: Path) -> dict[str, Any]:
    """
    Read a YAML mapping from ``path``.

    Raises:
        ConfigurationError: If the file is missing, unparsable or not a mapping.
    """
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def load_run_file(path: Path, settings: type[Config] | None = None) -> tuple[RunConfig, dict[str, Any]]:
    """
    Load a run file.

    Returns:
        The validated :class:`RunConfig` and the raw mapping, which also
        carries the ``scenario`` reference and ``base_url``.
    """
    data = load_yaml(path)
    return RunConfig.from_dict(data, settings), data
