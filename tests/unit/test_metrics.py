"""
Unit tests for the metrics registry.

Covers the three metric kinds, nearest-rank percentiles, concurrent
writers, bounded trend memory and the post-shutdown drop counter.
"""

import threading

import pytest

from rampload.exceptions import MetricKindError
from rampload.metrics import (
    MetricKind,
    MetricsRegistry,
    UnsupportedAggregation,
    nearest_rank,
    percentile_key,
)

pytestmark = pytest.mark.unit


class TestAggregation:
    """Aggregations exposed by each metric kind."""

    def test_counter_sums_increments(self, registry):
        # Act
        registry.add_counter("ops_total")
        registry.add_counter("ops_total", 4)

        # Assert
        snapshot = registry.snapshot()
        assert snapshot.get("ops_total").count == 5

    def test_counter_rejects_negative_increment(self, registry):
        with pytest.raises(ValueError):
            registry.add_counter("ops_total", -1)

    def test_rate_is_fraction_of_true_samples(self, registry):
        # Arrange
        for index in range(10):
            registry.add_rate("ops_failed", index < 3)

        # Act
        rate = registry.snapshot().get("ops_failed")

        # Assert
        assert rate.rate == pytest.approx(0.3)
        assert rate.passes == 3
        assert rate.fails == 7
        assert rate.aggregate("count") == 10

    def test_trend_reports_min_max_avg(self, registry):
        for value in (10, 20, 30, 40):
            registry.add_trend("op_duration", value)

        trend = registry.snapshot().get("op_duration")

        assert trend.minimum == 10
        assert trend.maximum == 40
        assert trend.avg == 25
        assert trend.aggregate("count") == 4
        assert not trend.approximate

    def test_p95_of_uniform_series_uses_nearest_rank(self, registry):
        # Arrange: 10, 20, ..., 1000
        for value in range(10, 1001, 10):
            registry.add_trend("http_req_duration", value)

        # Act
        trend = registry.snapshot().get("http_req_duration")

        # Assert
        assert trend.aggregate("p(95)") == 950
        assert trend.aggregate("med") == 500
        assert trend.aggregate("p(100)") == 1000
        assert trend.aggregate("p(0)") == 10

    def test_unsupported_aggregation_raises(self, registry):
        registry.add_rate("checks", True)

        with pytest.raises(UnsupportedAggregation):
            registry.snapshot().get("checks").aggregate("p(95)")

    def test_counter_rate_uses_elapsed_time(self, clock):
        # Arrange
        registry = MetricsRegistry(clock=clock)
        registry.start()
        registry.add_counter("http_reqs", 30)
        clock.advance(10)

        # Act
        counter = registry.snapshot().get("http_reqs")

        # Assert
        assert counter.aggregate("rate") == pytest.approx(3.0)


def test_nearest_rank_on_small_lists():
    assert nearest_rank([1.0], 99) == 1.0
    assert nearest_rank([1.0, 2.0, 3.0, 4.0], 50) == 2.0
    assert nearest_rank([1.0, 2.0, 3.0, 4.0], 51) == 3.0
    with pytest.raises(ValueError):
        nearest_rank([], 50)


def test_percentile_key_formatting():
    assert percentile_key(95) == "p(95)"
    assert percentile_key(99.9) == "p(99.9)"


def test_kind_is_fixed_at_first_registration(registry):
    registry.add_counter("requests")

    with pytest.raises(MetricKindError) as excinfo:
        registry.add_trend("requests", 12.5)

    assert excinfo.value.registered == "counter"
    assert excinfo.value.attempted == "trend"


def test_registered_metric_appears_without_samples(registry):
    registry.register("errors", MetricKind.RATE)

    snapshot = registry.snapshot()

    assert "errors" in snapshot
    assert snapshot.get("errors").total == 0
    assert registry.names() == ["errors"]


def test_concurrent_writers_lose_no_samples(registry):
    """8 threads x 5000 increments must add up exactly."""
    # Arrange
    threads = 8
    per_thread = 5000
    barrier = threading.Barrier(threads)

    def writer():
        barrier.wait()
        for index in range(per_thread):
            registry.add_counter("ops_total")
            registry.add_rate("ops_failed", index % 10 == 0)
            registry.add_trend("op_duration", index)

    workers = [threading.Thread(target=writer) for _ in range(threads)]

    # Act
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    # Assert
    snapshot = registry.snapshot()
    assert snapshot.get("ops_total").count == threads * per_thread
    assert snapshot.get("ops_failed").total == threads * per_thread
    assert snapshot.get("ops_failed").passes == threads * per_thread // 10
    assert snapshot.get("op_duration").count == threads * per_thread


def test_trend_switches_to_reservoir_past_sample_limit(caplog):
    # Arrange
    registry = MetricsRegistry(trend_sample_limit=100)

    # Act
    for value in range(1000):
        registry.add_trend("op_duration", value)

    # Assert
    trend = registry.snapshot().get("op_duration")
    assert trend.approximate is True
    assert len(trend.samples) == 100
    assert trend.count == 1000
    assert trend.minimum == 0
    assert trend.maximum == 999
    assert trend.avg == pytest.approx(499.5)
    assert list(trend.samples) == sorted(trend.samples)
    assert "approximate" in caplog.text


def test_samples_after_close_are_dropped_and_counted(registry):
    registry.add_counter("ops_total")
    registry.close()

    registry.add_counter("ops_total")
    registry.add_rate("ops_failed", True)

    snapshot = registry.snapshot()
    assert registry.closed
    assert snapshot.get("ops_total").count == 1
    assert snapshot.get("ops_failed").total == 0
    assert snapshot.dropped_samples == 2


def test_writer_racing_close_either_lands_or_is_dropped(registry):
    # Arrange
    registry.add_counter("ops_total")
    start = threading.Barrier(5)

    def writer():
        start.wait()
        for _ in range(2000):
            registry.add_counter("ops_total")

    threads = [threading.Thread(target=writer) for _ in range(4)]
    for thread in threads:
        thread.start()

    # Act
    start.wait()
    registry.close()
    after_close = registry.snapshot().get("ops_total").count
    for thread in threads:
        thread.join()

    # Assert
    snapshot = registry.snapshot()
    assert snapshot.get("ops_total").count == after_close
    assert after_close + snapshot.dropped_samples == 1 + 4 * 2000


def test_metric_created_after_close_is_frozen(registry):
    registry.close()

    registry.add_trend("late_duration", 12.0)

    snapshot = registry.snapshot()
    assert snapshot.get("late_duration").count == 0
    assert snapshot.dropped_samples == 1


def test_snapshot_is_immutable_view(registry):
    registry.add_trend("op_duration", 5)
    before = registry.snapshot()

    registry.add_trend("op_duration", 10)

    assert before.get("op_duration").count == 1
    assert registry.snapshot().get("op_duration").count == 2
