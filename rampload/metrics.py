"""
Thread-safe metrics registry.

Every virtual user writes samples into one shared :class:`MetricsRegistry`.
The registry keeps one accumulator per metric name and each accumulator
guards itself with its own lock, so a burst of writes to
``http_req_duration`` never blocks a writer recording ``checks``.

Three metric kinds exist:

- **Counter** -- monotonic sum (``ops_total``)
- **Rate** -- fraction of boolean samples that are true (``ops_failed``)
- **Trend** -- numeric distribution with min/max/avg/percentiles

Trend percentiles use the nearest-rank definition: ``p(95)`` is the
value at position ``ceil(0.95 * n)`` of the sorted samples.  Samples are
kept in full up to ``trend_sample_limit``; past that the trend keeps a
uniform reservoir sample of that size (Algorithm R) and reports its
percentiles as approximate.  Count, sum, min and max stay exact.

Key Concepts Demonstrated:
- Fine-grained locking (one lock per accumulator, no global write lock)
- Immutable snapshots that reporting and thresholds read from
- Bounded-memory degradation that is logged and reported, never silent
"""

from __future__ import annotations

import bisect
import logging
import math
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rampload.exceptions import MetricKindError

logger = logging.getLogger(__name__)

DEFAULT_TREND_SAMPLE_LIMIT = 100_000


class MetricKind(str, Enum):
    """Kind of a metric, fixed at first registration."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"


def nearest_rank(sorted_values: list[float], percentile: float) -> float:
    """Return the nearest-rank percentile of an already sorted list."""
    if not sorted_values:
        raise ValueError("Cannot compute a percentile of no samples")
    if not 0 <= percentile <= 100:
        raise ValueError(f"Percentile must be within [0, 100], got {percentile}")
    rank = math.ceil(percentile / 100.0 * len(sorted_values))
    return sorted_values[max(rank, 1) - 1]


def percentile_key(percentile: float) -> str:
    """Canonical aggregation name for a percentile, e.g. ``p(95)`` or ``p(99.9)``."""
    return f"p({percentile:g})"


# Metrics the engine itself records, with the kind each is recorded as.
ENGINE_METRICS: dict[str, MetricKind] = {
    "ops_total": MetricKind.COUNTER,
    "ops_failed": MetricKind.RATE,
    "iterations": MetricKind.COUNTER,
    "iteration_duration": MetricKind.TREND,
    "checks": MetricKind.RATE,
    "op_duration": MetricKind.TREND,
    "http_reqs": MetricKind.COUNTER,
    "http_req_duration": MetricKind.TREND,
    "http_req_failed": MetricKind.RATE,
}


# =====================================================================
# Snapshots
# =====================================================================


class UnsupportedAggregation(ValueError):
    """The requested aggregation does not exist for this metric."""


@dataclass(frozen=True)
class CounterSnapshot:
    name: str
    count: float
    elapsed: float
    kind: MetricKind = MetricKind.COUNTER

    def aggregate(self, aggregation: str) -> float:
        if aggregation == "count":
            return self.count
        if aggregation == "rate":
            return self.count / self.elapsed if self.elapsed > 0 else 0.0
        raise UnsupportedAggregation(f"{aggregation!r} is not available for counter {self.name!r}")


@dataclass(frozen=True)
class RateSnapshot:
    name: str
    passes: int
    total: int
    kind: MetricKind = MetricKind.RATE

    @property
    def fails(self) -> int:
        return self.total - self.passes

    @property
    def rate(self) -> float:
        return self.passes / self.total if self.total else 0.0

    def aggregate(self, aggregation: str) -> float:
        values = {
            "rate": self.rate,
            "passes": float(self.passes),
            "fails": float(self.fails),
            "count": float(self.total),
        }
        try:
            return values[aggregation]
        except KeyError:
            raise UnsupportedAggregation(
                f"{aggregation!r} is not available for rate {self.name!r}"
            ) from None


@dataclass(frozen=True)
class TrendSnapshot:
    """
    Point-in-time view of a trend.

    ``samples`` is sorted.  When ``approximate`` is true it is a uniform
    reservoir of the full stream rather than every sample.
    """

    name: str
    count: int
    total: float
    minimum: float
    maximum: float
    samples: tuple[float, ...]
    approximate: bool = False
    kind: MetricKind = MetricKind.TREND

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0

    def percentile(self, percentile: float) -> float:
        return nearest_rank(list(self.samples), percentile)

    def aggregate(self, aggregation: str) -> float:
        if aggregation == "avg":
            return self.avg
        if aggregation == "min":
            return self.minimum
        if aggregation == "max":
            return self.maximum
        if aggregation == "count":
            return float(self.count)
        if aggregation == "med":
            return self.percentile(50)
        if aggregation.startswith("p(") and aggregation.endswith(")"):
            try:
                value = float(aggregation[2:-1])
            except ValueError:
                raise UnsupportedAggregation(f"Malformed percentile {aggregation!r}") from None
            return self.percentile(value)
        raise UnsupportedAggregation(f"{aggregation!r} is not available for trend {self.name!r}")


MetricSnapshot = CounterSnapshot | RateSnapshot | TrendSnapshot


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of every metric at one moment."""

    metrics: dict[str, MetricSnapshot]
    elapsed: float
    dropped_samples: int = 0

    def get(self, name: str) -> MetricSnapshot | None:
        return self.metrics.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self.metrics


# =====================================================================
# Accumulators
# =====================================================================


class _Accumulator:
    """
    Common state of every accumulator.

    ``add`` returns ``False`` once the accumulator is frozen; the check
    happens under the same lock as the update, so no sample lands after
    :meth:`freeze` returns.
    """

    kind: MetricKind

    def __init__(self, name: str):
        self.name = name
        self.frozen = False
        self._lock = threading.Lock()

    def freeze(self) -> None:
        with self._lock:
            self.frozen = True


class _Counter(_Accumulator):
    kind = MetricKind.COUNTER

    def __init__(self, name: str):
        super().__init__(name)
        self._value = 0.0

    def add(self, value: Any) -> bool:
        amount = float(value)
        if amount < 0:
            raise ValueError(f"Counter {self.name!r} cannot decrease (got {amount})")
        with self._lock:
            if self.frozen:
                return False
            self._value += amount
            return True

    def snapshot(self, elapsed: float) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(self.name, self._value, elapsed)


class _Rate(_Accumulator):
    kind = MetricKind.RATE

    def __init__(self, name: str):
        super().__init__(name)
        self._passes = 0
        self._total = 0

    def add(self, value: Any) -> bool:
        hit = 1 if value else 0
        with self._lock:
            if self.frozen:
                return False
            self._passes += hit
            self._total += 1
            return True

    def snapshot(self, elapsed: float) -> RateSnapshot:
        with self._lock:
            return RateSnapshot(self.name, self._passes, self._total)


class _Trend(_Accumulator):
    kind = MetricKind.TREND

    def __init__(self, name: str, sample_limit: int):
        super().__init__(name)
        self._limit = sample_limit
        self._samples: list[float] = []
        self._count = 0
        self._total = 0.0
        self._min = math.inf
        self._max = -math.inf
        self._approximate = False
        self._rng = random.Random()

    def add(self, value: Any) -> bool:
        sample = float(value)
        with self._lock:
            if self.frozen:
                return False
            self._count += 1
            self._total += sample
            if sample < self._min:
                self._min = sample
            if sample > self._max:
                self._max = sample

            if len(self._samples) < self._limit:
                bisect.insort(self._samples, sample)
                return True

            if not self._approximate:
                self._approximate = True
                logger.warning(
                    "Trend %r exceeded %d samples; percentiles are now approximate",
                    self.name,
                    self._limit,
                )
            # Algorithm R: keep each new sample with probability limit/count.
            slot = self._rng.randrange(self._count)
            if slot < self._limit:
                del self._samples[slot]
                bisect.insort(self._samples, sample)
            return True

    def snapshot(self, elapsed: float) -> TrendSnapshot:
        with self._lock:
            if not self._count:
                return TrendSnapshot(self.name, 0, 0.0, 0.0, 0.0, ())
            return TrendSnapshot(
                name=self.name,
                count=self._count,
                total=self._total,
                minimum=self._min,
                maximum=self._max,
                samples=tuple(self._samples),
                approximate=self._approximate,
            )


# =====================================================================
# Registry
# =====================================================================


@dataclass
class MetricsRegistry:
    """
    Named accumulators shared by all virtual users of one run.

    The registry is an ordinary object owned by the run, not a module
    global, so tests and concurrent runs each get their own.

    Attributes:
        trend_sample_limit: Maximum samples a trend keeps before it
            switches to reservoir sampling.
    """

    trend_sample_limit: int = DEFAULT_TREND_SAMPLE_LIMIT
    clock: Any = time.monotonic
    _metrics: dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _registration_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _closed: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _dropped_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _dropped: int = field(default=0, init=False, repr=False)
    _started: float | None = field(default=None, init=False, repr=False)
    _stopped: float | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.trend_sample_limit < 1:
            raise ValueError("trend_sample_limit must be >= 1")
        self._started = self.clock()

    def _accumulator(self, name: str, kind: MetricKind) -> Any:
        accumulator = self._metrics.get(name)
        if accumulator is None:
            with self._registration_lock:
                accumulator = self._metrics.get(name)
                if accumulator is None:
                    accumulator = self._create(name, kind)
                    self._metrics[name] = accumulator
        if accumulator.kind is not kind:
            raise MetricKindError(name, accumulator.kind.value, kind.value)
        return accumulator

    def _create(self, name: str, kind: MetricKind) -> _Accumulator:
        accumulator: _Accumulator
        if kind is MetricKind.COUNTER:
            accumulator = _Counter(name)
        elif kind is MetricKind.RATE:
            accumulator = _Rate(name)
        else:
            accumulator = _Trend(name, self.trend_sample_limit)
        # Called under the registration lock, which close() also holds.
        if self._closed.is_set():
            accumulator.freeze()
        return accumulator

    def register(self, name: str, kind: MetricKind) -> None:
        """Declare a metric up front so it appears in reports even without samples."""
        self._accumulator(name, MetricKind(kind))

    def record(self, name: str, kind: MetricKind, value: Any) -> None:
        """
        Add one sample to the metric ``name``.

        Safe to call from any number of threads.  After :meth:`close` the
        sample is dropped and counted instead.

        Raises:
            MetricKindError: If ``name`` was registered with another kind.
        """
        accumulator = self._accumulator(name, MetricKind(kind))
        if not accumulator.add(value):
            with self._dropped_lock:
                self._dropped += 1

    def add_counter(self, name: str, value: float = 1) -> None:
        self.record(name, MetricKind.COUNTER, value)

    def add_rate(self, name: str, value: bool) -> None:
        self.record(name, MetricKind.RATE, value)

    def add_trend(self, name: str, value: float) -> None:
        self.record(name, MetricKind.TREND, value)

    def start(self) -> None:
        """Reset the elapsed-time origin used for per-second counter rates."""
        self._started = self.clock()

    def close(self) -> None:
        """
        Stop accepting samples; late writers are counted as dropped.

        Every accumulator is frozen under its own lock, so a write racing
        with ``close`` either lands before it or is dropped.
        """
        with self._registration_lock:
            if self._closed.is_set():
                return
            self._stopped = self.clock()
            self._closed.set()
            accumulators = list(self._metrics.values())
        for accumulator in accumulators:
            accumulator.freeze()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def dropped_samples(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def names(self) -> list[str]:
        return sorted(self._metrics)

    def snapshot(self) -> RegistrySnapshot:
        """
        Capture every metric.

        Each accumulator is read under its own lock, so no snapshot ever
        sees half of a ``record`` call.  Different metrics are read one
        after another and are not mutually synchronised.
        """
        end = self._stopped if self._stopped is not None else self.clock()
        elapsed = max(end - (self._started or end), 0.0)
        items = list(self._metrics.items())
        return RegistrySnapshot(
            metrics={name: accumulator.snapshot(elapsed) for name, accumulator in items},
            elapsed=elapsed,
            dropped_samples=self.dropped_samples,
        )
