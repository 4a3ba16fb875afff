"""
End-of-run summary.

:func:`build_summary` turns a final registry snapshot plus threshold
verdicts into a plain nested dictionary.  :func:`render_json` and
:func:`render_text` are pure renderings of that dictionary for
downstream tooling and for CI logs respectively; neither looks at live
run state.

Key Concepts Demonstrated:
- Pure functions from snapshot to report (trivially testable)
- One structured document feeding both machine and human formats
- Fixed-width summary table in the style of the CI threshold checker
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping

from rampload.metrics import MetricKind, RateSnapshot, RegistrySnapshot, TrendSnapshot
from rampload.thresholds import ThresholdResult

TREND_PERCENTILES = (90, 95, 99)
_RULE = "-" * 72


@dataclass(frozen=True)
class RunInfo:
    """Facts about the run that are not metrics."""

    scenario: str
    state: str
    started_at: datetime
    ended_at: datetime
    peak_vus: int
    abort_reason: str | None = None

    @property
    def duration(self) -> float:
        return max((self.ended_at - self.started_at).total_seconds(), 0.0)


def _trend_section(metric: TrendSnapshot) -> dict[str, Any]:
    if metric.count == 0:
        return {"type": MetricKind.TREND.value, "count": 0}
    section: dict[str, Any] = {
        "type": MetricKind.TREND.value,
        "avg": metric.avg,
        "min": metric.minimum,
        "max": metric.maximum,
        "med": metric.aggregate("med"),
    }
    for percentile in TREND_PERCENTILES:
        section[f"p({percentile})"] = metric.percentile(percentile)
    section["count"] = metric.count
    section["approximate"] = metric.approximate
    return section


def _rate_section(metric: RateSnapshot) -> dict[str, Any]:
    return {
        "type": MetricKind.RATE.value,
        "rate": metric.rate,
        "percent": metric.rate * 100.0,
        "passes": metric.passes,
        "fails": metric.fails,
        "count": metric.total,
    }


def _number(value: float) -> float | int:
    return int(value) if float(value).is_integer() else value


def _metric_section(metric: Any, duration: float) -> dict[str, Any]:
    if isinstance(metric, TrendSnapshot):
        return _trend_section(metric)
    if isinstance(metric, RateSnapshot):
        return _rate_section(metric)
    return {
        "type": MetricKind.COUNTER.value,
        "count": _number(metric.count),
        "rate": metric.count / duration if duration > 0 else 0.0,
    }


def build_summary(
    snapshot: RegistrySnapshot,
    results: Iterable[ThresholdResult],
    run: RunInfo,
) -> dict[str, Any]:
    """
    Assemble the structured end-of-run report.

    Returns:
        A JSON-serialisable dictionary with ``run``, ``operations``,
        ``metrics``, ``thresholds``, ``thresholds_passed`` and
        ``dropped_samples`` keys.
    """
    duration = run.duration
    results = list(results)
    ops = snapshot.get("ops_total")
    ops_total = _number(ops.count) if ops is not None else 0

    return {
        "run": {
            "scenario": run.scenario,
            "state": run.state,
            "started_at": run.started_at.isoformat(),
            "ended_at": run.ended_at.isoformat(),
            "duration_s": duration,
            "peak_vus": run.peak_vus,
            "abort_reason": run.abort_reason,
        },
        "operations": {
            "total": ops_total,
            "throughput_per_s": ops_total / duration if duration > 0 else 0.0,
        },
        "metrics": {
            name: _metric_section(snapshot.metrics[name], duration)
            for name in sorted(snapshot.metrics)
        },
        "thresholds": [result.to_dict() for result in results],
        "thresholds_passed": all(result.passed for result in results),
        "dropped_samples": snapshot.dropped_samples,
    }


def render_json(summary: Mapping[str, Any]) -> str:
    """Machine-readable rendering."""
    return json.dumps(summary, indent=2)


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def render_text(summary: Mapping[str, Any]) -> str:
    """Human-readable rendering for terminals and CI logs."""
    run = summary["run"]
    operations = summary["operations"]
    metrics = summary["metrics"]
    lines = [
        f"Load Test Summary: {run['scenario']}",
        _RULE,
        f"{'State':<22}{run['state']}",
        f"{'Duration (s)':<22}{run['duration_s']:.2f}",
        f"{'Peak VUs':<22}{run['peak_vus']}",
        f"{'Operations':<22}{_fmt(operations['total'])}",
        f"{'Throughput (ops/s)':<22}{operations['throughput_per_s']:.2f}",
    ]
    if run.get("abort_reason"):
        lines.append(f"{'Aborted':<22}{run['abort_reason']}")

    trends = {name: data for name, data in metrics.items() if data["type"] == "trend"}
    if trends:
        lines += [
            _RULE,
            f"{'Trend (ms)':<24}{'avg':>8}{'min':>8}{'max':>9}{'p(95)':>9}{'p(99)':>9}",
        ]
        for name, data in trends.items():
            marker = "~" if data.get("approximate") else ""
            lines.append(
                f"{name + marker:<24}{_fmt(data.get('avg')):>8}{_fmt(data.get('min')):>8}"
                f"{_fmt(data.get('max')):>9}{_fmt(data.get('p(95)')):>9}{_fmt(data.get('p(99)')):>9}"
            )

    rates = {name: data for name, data in metrics.items() if data["type"] == "rate"}
    if rates:
        lines += [_RULE, f"{'Rate':<40}{'%':>10}{'true':>10}{'false':>10}"]
        for name, data in rates.items():
            lines.append(
                f"{name:<40}{data['percent']:>10.2f}{data['passes']:>10}{data['fails']:>10}"
            )

    counters = {name: data for name, data in metrics.items() if data["type"] == "counter"}
    if counters:
        lines += [_RULE, f"{'Counter':<40}{'count':>14}{'per second':>14}"]
        for name, data in counters.items():
            lines.append(f"{name:<40}{_fmt(data['count']):>14}{data['rate']:>14.2f}")

    if summary["thresholds"]:
        lines += [_RULE, f"{'Threshold':<40}{'Observed':>12}{'Status':>10}"]
        for entry in summary["thresholds"]:
            label = f"{entry['metric']} {entry['expression']}"
            lines.append(f"{label:<40}{_fmt(entry['observed']):>12}{entry['status'].upper():>10}")
            if entry["reason"]:
                lines.append(f"  {entry['reason']}")

    if summary.get("dropped_samples"):
        lines += [_RULE, f"Samples dropped after shutdown: {summary['dropped_samples']}"]

    lines += [_RULE, f"Overall: {'PASS' if summary['thresholds_passed'] else 'FAIL'}"]
    return "\n".join(lines) + "\n"
