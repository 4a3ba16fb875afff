"""
Stage scheduler: turns a ramp profile into running virtual users.

The scheduler is a single periodic coordinator.  On every tick it asks
the ramp profile how many virtual users should be running right now and
reconciles the live population against that number:

- too few: start new virtual users, each beginning its first iteration
  immediately
- too many: retire the most recently started ones; a retired user
  finishes its current iteration and then exits on its own

Virtual users that used up a per-VU iteration budget keep their slot,
so they are never replaced by fresh users.

Key Concepts Demonstrated:
- Reconciliation loop (desired vs. actual) instead of per-user timers
- Injectable clock and spawn function so tests drive ticks by hand
- Cancellable tick wait via ``threading.Event``
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Protocol

from rampload.stages import RampProfile

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETE = "complete"
    ABORTED = "aborted"


class Worker(Protocol):
    """What the scheduler needs from a virtual user."""

    vu_id: int
    exhausted: bool

    def start(self) -> None: ...

    def retire(self) -> None: ...

    def stop(self) -> None: ...

    def is_alive(self) -> bool: ...

    def join(self, timeout: float | None = None) -> bool: ...


class StageScheduler:
    """
    Drive the virtual-user population through a ramp profile.

    Attributes:
        profile: Stages to follow.
        tick_interval: Seconds between reconciliations.
        iterations: Per-VU iteration budget, or ``None`` for unlimited.
        peak_vus: Highest number of live virtual users observed.
        state: Lifecycle state of the scheduler.
    """

    def __init__(
        self,
        profile: RampProfile,
        spawn: Callable[[int], Worker],
        *,
        tick_interval: float = 1.0,
        iterations: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profile = profile
        self.spawn = spawn
        self.tick_interval = tick_interval
        self.iterations = iterations
        self.clock = clock
        self.peak_vus = 0
        self.state = RunState.PENDING
        self.desired = 0
        self._active: list[Worker] = []
        self._retiring: list[Worker] = []
        self._exhausted_slots = 0
        self._next_id = 1
        self._current_stage: int | None = None

    # ------------------------------------------------------------------
    # Population bookkeeping
    # ------------------------------------------------------------------

    @property
    def active_vus(self) -> int:
        return len(self._active)

    @property
    def live_vus(self) -> int:
        return sum(1 for vu in (*self._active, *self._retiring) if vu.is_alive())

    @property
    def exhausted_slots(self) -> int:
        return self._exhausted_slots

    def workers(self) -> list[Worker]:
        return [*self._active, *self._retiring]

    def _prune(self) -> None:
        still_active: list[Worker] = []
        for vu in self._active:
            if vu.is_alive():
                still_active.append(vu)
            elif vu.exhausted:
                self._exhausted_slots += 1
            else:
                logger.warning("VU %d exited unexpectedly; its slot will be refilled", vu.vu_id)
        self._active = still_active
        self._retiring = [vu for vu in self._retiring if vu.is_alive()]

    def reconcile(self, elapsed: float) -> int:
        """
        Bring the population in line with the profile at ``elapsed``.

        Returns the desired concurrency that was applied.
        """
        self._prune()
        self._log_stage_change(elapsed)
        desired = self.profile.target_at(elapsed)
        self.desired = desired
        occupied = len(self._active) + self._exhausted_slots

        if occupied < desired:
            for _ in range(desired - occupied):
                vu = self.spawn(self._next_id)
                self._next_id += 1
                vu.start()
                self._active.append(vu)
        elif occupied > desired and self._active:
            excess = min(occupied - desired, len(self._active))
            for vu in self._active[-excess:]:
                vu.retire()
                self._retiring.append(vu)
            del self._active[-excess:]

        self.peak_vus = max(self.peak_vus, len(self._active) + len(self._retiring))
        return desired

    def _log_stage_change(self, elapsed: float) -> None:
        index = self.profile.stage_index_at(elapsed)
        if index is None or index == self._current_stage:
            return
        self._current_stage = index
        stage = self.profile.stages[index]
        logger.info(
            "Stage %d/%d: target %d VUs over %.1fs",
            index + 1,
            len(self.profile.stages),
            stage.target,
            stage.duration,
        )

    def budget_spent(self) -> bool:
        """``True`` when an iteration budget is set and every slot has used it up."""
        if self.iterations is None:
            return False
        return not self._active and self._exhausted_slots >= self.profile.peak_target

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(
        self,
        stop_event: threading.Event,
        on_tick: Callable[[float], None] | None = None,
    ) -> None:
        """
        Tick until the profile ends, the budget is spent, or ``stop_event`` is set.

        ``on_tick`` is called after every reconciliation with the elapsed
        seconds; setting ``stop_event`` from it ends the loop.
        """
        self.state = RunState.RUNNING
        started = self.clock()
        total = self.profile.total_duration
        logger.info(
            "Starting ramp: %d stages over %.1fs, peak %d VUs",
            len(self.profile.stages),
            total,
            self.profile.peak_target,
        )

        while not stop_event.is_set():
            elapsed = self.clock() - started
            if elapsed > total:
                break
            self.reconcile(elapsed)
            if self.budget_spent():
                logger.info("All VUs finished their iteration budget")
                break
            if on_tick is not None:
                on_tick(elapsed)
            stop_event.wait(self.tick_interval)

        self.state = RunState.DRAINING

    def drain(self, grace: float, *, hard: bool = False) -> list[Worker]:
        """
        Retire (or stop, when ``hard``) every virtual user and wait for them.

        Virtual users still running after ``grace`` seconds are abandoned
        and returned.
        """
        self.state = RunState.DRAINING
        workers = self.workers()
        for vu in workers:
            if hard:
                vu.stop()
            else:
                vu.retire()

        deadline = self.clock() + grace
        for vu in workers:
            vu.join(max(deadline - self.clock(), 0.0))

        abandoned = [vu for vu in workers if vu.is_alive()]
        if abandoned:
            logger.warning(
                "Abandoning %d VUs still running after %.1fs grace period",
                len(abandoned),
                grace,
            )
        self._prune()
        self.state = RunState.COMPLETE
        return abandoned
