"""
Unit tests for the stage scheduler.

Workers are fakes and reconciliation is driven with explicit elapsed
values, so these tests involve no threads and no sleeping.
"""

import threading

import pytest

from rampload.scheduler import RunState, StageScheduler
from rampload.stages import RampProfile

pytestmark = pytest.mark.unit


def _profile(*stages, start=0):
    return RampProfile.from_stages(
        [{"duration": duration, "target": target} for duration, target in stages],
        start_target=start,
    )


def test_reconcile_spawns_up_to_target(spawned_workers):
    # Arrange
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((10, 10)), spawn)

    # Act
    desired = scheduler.reconcile(5)

    # Assert
    assert desired == 5
    assert len(workers) == 5
    assert all(worker.started for worker in workers)
    assert [worker.vu_id for worker in workers] == [1, 2, 3, 4, 5]
    assert scheduler.active_vus == 5


def test_reconcile_retires_newest_first(spawned_workers):
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((10, 10), (10, 0)), spawn)
    scheduler.reconcile(10)

    desired = scheduler.reconcile(15)

    assert desired == 5
    assert [w.vu_id for w in workers if w.retired] == [6, 7, 8, 9, 10]
    assert scheduler.active_vus == 5


def test_retiring_workers_count_toward_peak_until_they_exit(spawned_workers):
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((10, 10), (10, 0)), spawn)
    scheduler.reconcile(10)
    scheduler.reconcile(15)

    assert scheduler.peak_vus == 10
    assert scheduler.live_vus == 10

    for worker in workers:
        if worker.retired:
            worker.finish()
    scheduler.reconcile(15)

    assert scheduler.live_vus == 5
    assert len(workers) == 10


def test_zero_duration_zero_target_spawns_nobody(spawned_workers):
    # Arrange
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((0, 0)), spawn, tick_interval=0.01)

    # Act
    scheduler.run(threading.Event())
    abandoned = scheduler.drain(1)

    # Assert
    assert workers == []
    assert abandoned == []
    assert scheduler.peak_vus == 0
    assert scheduler.state is RunState.COMPLETE


def test_initial_vus_start_on_first_tick(spawned_workers):
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((10, 20), start=4), spawn)

    scheduler.reconcile(0)

    assert len(workers) == 4


def test_unexpectedly_dead_worker_is_replaced(spawned_workers):
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((10, 3), (10, 3)), spawn)
    scheduler.reconcile(10)

    workers[0].finish()
    scheduler.reconcile(12)

    assert len(workers) == 4
    assert scheduler.active_vus == 3


def test_exhausted_slots_are_never_refilled(spawned_workers):
    # Arrange
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((0, 3), (60, 3)), spawn, iterations=2)
    scheduler.reconcile(0)

    # Act
    workers[0].finish(exhausted=True)
    scheduler.reconcile(1)

    # Assert
    assert len(workers) == 3
    assert scheduler.exhausted_slots == 1
    assert not scheduler.budget_spent()

    for worker in workers[1:]:
        worker.finish(exhausted=True)
    scheduler.reconcile(2)

    assert scheduler.budget_spent()
    assert len(workers) == 3


def test_budget_is_ignored_without_iterations(spawned_workers):
    spawn, _ = spawned_workers
    scheduler = StageScheduler(_profile((10, 0)), spawn)

    assert scheduler.budget_spent() is False


def test_run_stops_when_stop_event_set(spawned_workers, clock):
    # Arrange
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((60, 10)), spawn, tick_interval=0.01, clock=clock)
    stop = threading.Event()
    ticks = []

    def on_tick(elapsed):
        ticks.append(elapsed)
        clock.advance(6)
        if len(ticks) == 3:
            stop.set()

    # Act
    scheduler.run(stop, on_tick=on_tick)

    # Assert
    assert ticks == [0, 6, 12]
    assert len(workers) == 2
    assert scheduler.state is RunState.DRAINING


def test_run_ends_after_total_duration(spawned_workers, clock):
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((10, 4)), spawn, tick_interval=0.001, clock=clock)

    scheduler.run(threading.Event(), on_tick=lambda elapsed: clock.advance(2.5))

    assert len(workers) == 4
    assert scheduler.desired == 4


def test_drain_abandons_workers_that_outlive_grace(spawned_workers, clock):
    # Arrange
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((10, 3)), spawn, clock=clock)
    scheduler.reconcile(10)
    workers[0].finish()

    # Act
    abandoned = scheduler.drain(0)

    # Assert
    assert [w.vu_id for w in abandoned] == [2, 3]
    assert all(worker.retired for worker in workers)
    assert scheduler.state is RunState.COMPLETE


def test_hard_drain_stops_workers(spawned_workers):
    spawn, workers = spawned_workers
    scheduler = StageScheduler(_profile((10, 2)), spawn)
    scheduler.reconcile(10)

    scheduler.drain(0, hard=True)

    assert all(worker.stopped for worker in workers)
