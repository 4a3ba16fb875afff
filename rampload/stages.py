"""
Ramp profiles: staged concurrency targets over time.

A ramp profile is an ordered list of stages.  Each stage moves the
desired virtual-user count linearly from the previous target to its own
target across its duration, so ``[{30s, 20}, {1m, 50}]`` climbs from 0
to 20 users in the first half minute, then from 20 to 50 over the next
minute.

Key Concepts Demonstrated:
- Human-friendly duration strings (``"1m30s"``, ``"500ms"``)
- Pure interpolation function that the scheduler polls on every tick
- Fail-fast validation so bad profiles never reach the scheduler
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from rampload.exceptions import ConfigurationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """
    Convert a duration to seconds.

    Accepts plain numbers (already seconds) and strings made of one or
    more ``<number><unit>`` parts where unit is ``ms``, ``s``, ``m`` or
    ``h``, e.g. ``"30s"``, ``"2m"``, ``"1m30s"``.  A bare numeric string
    is read as seconds.

    Raises:
        ConfigurationError: If the value is malformed or negative.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower().replace(" ", "")
        if not text:
            raise ConfigurationError("Duration must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            seconds = _parse_unit_string(text, value)
    else:
        raise ConfigurationError(f"Invalid duration: {value!r}")

    if seconds < 0 or math.isnan(seconds):
        raise ConfigurationError(f"Duration must be non-negative, got {value!r}")
    return seconds


def _parse_unit_string(text: str, original: Any) -> float:
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()
    if position != len(text) or position == 0:
        raise ConfigurationError(f"Invalid duration: {original!r}")
    return total


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class Stage:
    """One time window of a ramp profile."""

    duration: float
    target: int

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ConfigurationError(f"Stage duration must be >= 0, got {self.duration}")
        if self.target < 0:
            raise ConfigurationError(f"Stage target must be >= 0, got {self.target}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Stage:
        """Build a stage from ``{"duration": "30s", "target": 20}``."""
        try:
            duration = parse_duration(data["duration"])
            target = int(data["target"])
        except KeyError as exc:
            raise ConfigurationError(f"Stage is missing {exc.args[0]!r}: {data!r}") from exc
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Stage target must be an integer: {data!r}") from exc
        return cls(duration=duration, target=target)


@dataclass(frozen=True)
class RampProfile:
    """
    Ordered stages plus the concurrency the ramp starts from.

    Attributes:
        stages: Stages in execution order.
        start_target: Virtual users running at ``t = 0`` before the first
            stage starts interpolating (``vus_initial``).
    """

    stages: tuple[Stage, ...]
    start_target: int = 0
    _boundaries: tuple[float, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.start_target < 0:
            raise ConfigurationError(f"Initial VUs must be >= 0, got {self.start_target}")
        boundaries = []
        elapsed = 0.0
        for stage in self.stages:
            boundaries.append(elapsed)
            elapsed += stage.duration
        object.__setattr__(self, "_boundaries", tuple(boundaries))

    @classmethod
    def from_stages(cls, stages: Iterable[Stage | dict[str, Any]], start_target: int = 0) -> RampProfile:
        parsed = tuple(
            stage if isinstance(stage, Stage) else Stage.from_dict(stage) for stage in stages
        )
        return cls(stages=parsed, start_target=start_target)

    @property
    def total_duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def peak_target(self) -> int:
        return max([self.start_target, *(stage.target for stage in self.stages)])

    def target_at(self, elapsed: float) -> int:
        """
        Desired concurrency ``elapsed`` seconds after the profile started.

        Returns 0 before the start and after the end.  At the exact end of
        the profile the last stage's target is returned; zero-duration
        stages switch to their target immediately.
        """
        if elapsed < 0 or not self.stages:
            return 0
        total = self.total_duration
        if elapsed > total:
            return 0

        previous = self.start_target
        for start, stage in zip(self._boundaries, self.stages):
            end = start + stage.duration
            if elapsed < end:
                progress = (elapsed - start) / stage.duration
                return round_half_up(previous + (stage.target - previous) * progress)
            previous = stage.target
        return previous

    def stage_index_at(self, elapsed: float) -> int | None:
        """Index of the stage active at ``elapsed``, or ``None`` outside the profile."""
        if elapsed < 0:
            return None
        for index, (start, stage) in enumerate(zip(self._boundaries, self.stages)):
            if start <= elapsed < start + stage.duration:
                return index
        return None
