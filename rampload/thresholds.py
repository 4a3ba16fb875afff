"""
Threshold parsing and evaluation.

Thresholds decide whether a run passed.  Each one names a metric, an
aggregation of that metric and a comparison against a literal, written
the way load-test scripts usually write them::

    thresholds:
      http_req_duration: ["p(95)<500"]
      http_req_failed:
        - threshold: "rate<0.05"
          abort_on_fail: true

Expressions are parsed when the run is configured, so a typo fails the
run before a single virtual user starts.  A threshold on a metric that
never received a sample evaluates to ``no_data``, which counts as a
failure rather than a silent pass.

Key Concepts Demonstrated:
- Small regex grammar instead of ``eval`` on user input
- Three-state verdicts (pass / fail / no data) with human reasons
- One evaluator for live registries and for saved summary documents
"""

from __future__ import annotations

import logging
import math
import operator
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from rampload.exceptions import ConfigurationError, ThresholdSyntaxError
from rampload.metrics import (
    MetricKind,
    RateSnapshot,
    RegistrySnapshot,
    UnsupportedAggregation,
    percentile_key,
)

logger = logging.getLogger(__name__)

_EXPRESSION = re.compile(
    r"""^\s*
    (?P<agg>rate|avg|min|max|med|count|passes|fails|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))
    \s*(?P<op><=|>=|==|!=|<|>)\s*
    (?P<value>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)
    \s*$""",
    re.VERBOSE,
)

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


class ThresholdStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    NO_DATA = "no_data"


@dataclass(frozen=True)
class Threshold:
    """
    A pass/fail predicate over one aggregated metric value.

    Attributes:
        metric: Name of the metric the threshold reads.
        aggregation: ``rate``, ``avg``, ``min``, ``max``, ``med``,
            ``count``, ``passes``, ``fails`` or ``p(N)``.
        op: Comparison operator.
        value: Literal the aggregated value is compared against.
        abort_on_fail: Stop the run as soon as this threshold fails
            during live evaluation.
    """

    metric: str
    aggregation: str
    op: str
    value: float
    abort_on_fail: bool = False

    @property
    def expression(self) -> str:
        return f"{self.aggregation}{self.op}{self.value:g}"

    @property
    def description(self) -> str:
        return f"{self.metric}: {self.expression}"

    def holds(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.value)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    status: ThresholdStatus
    observed: float | None = None
    reason: str = ""

    @property
    def passed(self) -> bool:
        return self.status is ThresholdStatus.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.threshold.metric,
            "expression": self.threshold.expression,
            "status": self.status.value,
            "observed": self.observed,
            "reason": self.reason,
        }


def parse_expression(metric: str, expression: str, *, abort_on_fail: bool = False) -> Threshold:
    """
    Parse one expression such as ``"p(95)<500"`` for ``metric``.

    Raises:
        ThresholdSyntaxError: If the expression does not match the grammar.
    """
    if not isinstance(expression, str):
        raise ThresholdSyntaxError(repr(expression), "expression must be a string")
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ThresholdSyntaxError(
            expression, "expected '<aggregation> <operator> <number>', e.g. 'p(95)<500'"
        )

    aggregation = match.group("agg")
    if match.group("pct") is not None:
        percentile = float(match.group("pct"))
        if percentile > 100:
            raise ThresholdSyntaxError(expression, "percentile must be between 0 and 100")
        aggregation = percentile_key(percentile)

    value = float(match.group("value"))
    if math.isnan(value):
        raise ThresholdSyntaxError(expression, "value must be a number")

    return Threshold(
        metric=metric,
        aggregation=aggregation,
        op=match.group("op"),
        value=value,
        abort_on_fail=abort_on_fail,
    )


def parse_thresholds(mapping: Mapping[str, Any] | None) -> list[Threshold]:
    """
    Parse a ``{metric: [expression, ...]}`` mapping into thresholds.

    Each entry may be a plain expression string or a mapping with a
    ``threshold`` key and an optional ``abort_on_fail`` flag.  A single
    string instead of a list is accepted too.

    Raises:
        ConfigurationError: On malformed structure or expressions.
    """
    if not mapping:
        return []
    if not isinstance(mapping, Mapping):
        raise ConfigurationError("Thresholds must be a mapping of metric name to expressions")

    thresholds: list[Threshold] = []
    for metric, entries in mapping.items():
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        if not isinstance(entries, Iterable):
            raise ConfigurationError(f"Thresholds for {metric!r} must be a list")
        for entry in entries:
            if isinstance(entry, Mapping):
                if "threshold" not in entry:
                    raise ConfigurationError(
                        f"Threshold entry for {metric!r} is missing 'threshold': {dict(entry)!r}"
                    )
                thresholds.append(
                    parse_expression(
                        str(metric),
                        entry["threshold"],
                        abort_on_fail=bool(entry.get("abort_on_fail", entry.get("abortOnFail", False))),
                    )
                )
            else:
                thresholds.append(parse_expression(str(metric), entry))
    return thresholds


def evaluate_one(snapshot: RegistrySnapshot, threshold: Threshold) -> ThresholdResult:
    metric = snapshot.get(threshold.metric)
    if metric is None or _is_empty(metric):
        return ThresholdResult(
            threshold,
            ThresholdStatus.NO_DATA,
            reason=f"no samples recorded for {threshold.metric!r}",
        )

    try:
        observed = metric.aggregate(threshold.aggregation)
    except UnsupportedAggregation as exc:
        return ThresholdResult(threshold, ThresholdStatus.FAIL, reason=str(exc))

    if threshold.holds(observed):
        return ThresholdResult(threshold, ThresholdStatus.PASS, observed=observed)
    return ThresholdResult(
        threshold,
        ThresholdStatus.FAIL,
        observed=observed,
        reason=f"{threshold.aggregation}={observed:g} violates {threshold.expression}",
    )


def evaluate(snapshot: RegistrySnapshot, thresholds: Iterable[Threshold]) -> list[ThresholdResult]:
    """Evaluate every threshold against ``snapshot``, preserving order."""
    results = [evaluate_one(snapshot, threshold) for threshold in thresholds]
    for result in results:
        if not result.passed:
            logger.debug(
                "Threshold %s: %s (%s)",
                result.threshold.description,
                result.status.value,
                result.reason,
            )
    return results


def all_passed(results: Iterable[ThresholdResult]) -> bool:
    return all(result.passed for result in results)


def _is_empty(metric: Any) -> bool:
    if isinstance(metric, RateSnapshot):
        return metric.total == 0
    return getattr(metric, "count", 0) == 0


# =====================================================================
# Saved summaries
# =====================================================================


@dataclass(frozen=True)
class SummaryMetric:
    """
    Metric view rebuilt from a summary document.

    Only the aggregations the summary stored are available; anything
    else (e.g. ``p(75)`` when only p90/p95/p99 were exported) raises
    :class:`UnsupportedAggregation`.
    """

    name: str
    kind: MetricKind
    values: Mapping[str, float]

    @property
    def count(self) -> float:
        return self.values.get("count", 0)

    @property
    def total(self) -> float:
        return self.values.get("count", 0)

    def aggregate(self, aggregation: str) -> float:
        try:
            return float(self.values[aggregation])
        except KeyError:
            raise UnsupportedAggregation(
                f"{aggregation!r} for {self.name!r} is not present in the summary"
            ) from None


def summary_snapshot(summary: Mapping[str, Any]) -> RegistrySnapshot:
    """
    Rebuild a snapshot from a summary produced by ``build_summary``.

    Raises:
        ConfigurationError: If the document has no ``metrics`` section.
    """
    metrics = summary.get("metrics")
    if not isinstance(metrics, Mapping):
        raise ConfigurationError("Summary document has no 'metrics' section")

    views: dict[str, Any] = {}
    for name, data in metrics.items():
        try:
            kind = MetricKind(data.get("type"))
        except ValueError as exc:
            raise ConfigurationError(f"Metric {name!r} has unknown type {data.get('type')!r}") from exc
        values = {
            key: value
            for key, value in data.items()
            if isinstance(value, (int, float)) and not isinstance(value, bool)
        }
        views[name] = SummaryMetric(name=name, kind=kind, values=values)

    run = summary.get("run") or {}
    return RegistrySnapshot(metrics=views, elapsed=float(run.get("duration_s", 0.0)))
