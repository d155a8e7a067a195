"""
Stage scheduler: the control loop that sizes the virtual-user pool.

On every tick the scheduler asks the :class:`StageSchedule` how many
users should be active, then starts new users or issues stop directives
until the live count matches.  Users are stopped newest-first.  When the
schedule is exhausted the run drains: every user is told to stop, the
scheduler waits for in-flight iterations, and the run is complete.

Run states::

    pending → running → draining → complete
                   └──→ draining → aborted   (abort_on_fail threshold, request_abort(), or a crashed user)
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Protocol

from perf_harness.errors import HarnessError
from perf_harness.metrics import MetricRegistry
from perf_harness.stages import StageSchedule
from perf_harness.thresholds import ThresholdEvaluator

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETE = "complete"
    ABORTED = "aborted"


class Actor(Protocol):
    """What the scheduler needs from a virtual user."""

    index: int
    failure: BaseException | None

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def join(self, timeout: float | None = None) -> bool: ...


class StageScheduler:
    """
    Drive the actor population through a stage schedule.

    Args:
        schedule: The stage profile to follow.
        actor_factory: Called with a new actor index (1, 2, 3, ...) and
            must return an un-started actor.
        tick_interval: Seconds between reconciliations.
        registry: When given, its clock is reset at run start and it is
            sampled each tick for advisory threshold evaluation.
        evaluator: Thresholds checked each tick for ``abort_on_fail``.
        clock: Monotonic time source.
        drain_timeout: Per-actor join timeout while draining; ``None``
            waits for every in-flight iteration to finish.
    """

    def __init__(
        self,
        schedule: StageSchedule,
        actor_factory: Callable[[int], Actor],
        *,
        tick_interval: float = 1.0,
        registry: MetricRegistry | None = None,
        evaluator: ThresholdEvaluator | None = None,
        clock: Callable[[], float] = time.monotonic,
        drain_timeout: float | None = None,
    ):
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self.schedule = schedule
        self.actor_factory = actor_factory
        self.tick_interval = tick_interval
        self.registry = registry
        self.evaluator = evaluator
        self.drain_timeout = drain_timeout
        self.state = RunState.PENDING
        self.peak_actors = 0
        self.started_actors = 0
        self._clock = clock
        self._live: list[Actor] = []
        self._retired: list[Actor] = []
        self._next_index = 1
        self._current_stage: int | None = None
        self._abort_event = threading.Event()

    @property
    def live_count(self) -> int:
        """Actors running without a stop directive."""
        return len(self._live)

    def request_abort(self) -> None:
        """Ask the control loop to stop generating load and drain."""
        self._abort_event.set()

    # -----------------------------------------------------------------
    # One tick
    # -----------------------------------------------------------------

    def reconcile(self, elapsed: float) -> int:
        """
        Bring the live actor count in line with the schedule at ``elapsed``.

        Returns:
            The desired concurrency that was applied.

        Raises:
            HarnessError: If a live or retired actor crashed.
        """
        self._check_live()
        self._log_stage_transition(elapsed)
        desired = self.schedule.desired_concurrency(elapsed)

        while len(self._live) < desired:
            actor = self.actor_factory(self._next_index)
            self._next_index += 1
            actor.start()
            self._live.append(actor)
            self.started_actors += 1

        while len(self._live) > desired:
            actor = self._live.pop()
            actor.stop()
            self._retired.append(actor)

        self.peak_actors = max(self.peak_actors, len(self._live))
        self._reap_retired()
        return desired

    def _check_live(self) -> None:
        # A crashed actor's thread has exited; keep it out of the live count.
        crashed = [actor for actor in self._live if actor.failure is not None]
        if not crashed:
            return
        self._live = [actor for actor in self._live if actor.failure is None]
        _raise_if_crashed(crashed[0])

    def _reap_retired(self) -> None:
        finished = []
        still_running = []
        for actor in self._retired:
            if actor.join(0):
                finished.append(actor)
            else:
                still_running.append(actor)
        self._retired = still_running
        for actor in finished:
            _raise_if_crashed(actor)

    def _log_stage_transition(self, elapsed: float) -> None:
        index = self.schedule.stage_index_at(elapsed)
        if index is None or index == self._current_stage:
            return
        self._current_stage = index
        stage = self.schedule.stages[index]
        logger.info(
            "Stage %d/%d: ramping to %d users over %gs",
            index + 1,
            len(self.schedule),
            stage.target,
            stage.duration,
        )

    # -----------------------------------------------------------------
    # Whole run
    # -----------------------------------------------------------------

    def run(self) -> RunState:
        """
        Execute the full schedule, then drain.

        Blocks until every actor has stopped.

        Returns:
            ``RunState.COMPLETE``, or ``RunState.ABORTED`` if the run was
            cut short.

        Raises:
            HarnessError: If a virtual user crashed with an internal defect.
        """
        if self.state is not RunState.PENDING:
            raise RuntimeError(f"Scheduler already ran (state={self.state.value})")

        self.state = RunState.RUNNING
        if self.registry is not None:
            self.registry.start_clock()
        started = self._clock()
        aborted = False
        logger.info(
            "Starting load: %d stage(s), %gs total, peak %d users",
            len(self.schedule),
            self.schedule.total_duration,
            self.schedule.max_target,
        )

        try:
            while True:
                elapsed = self._clock() - started
                if self.schedule.is_exhausted(elapsed):
                    break

                self.reconcile(elapsed)

                if self._should_abort():
                    aborted = True
                    break

                remaining = self.schedule.total_duration - elapsed
                if self._abort_event.wait(min(self.tick_interval, remaining)):
                    aborted = True
                    break
        except BaseException:
            # Keep the original error; crashes found while draining are only logged.
            self.drain(raise_on_crash=False)
            self.state = RunState.ABORTED
            raise

        try:
            self.drain()
        except HarnessError:
            self.state = RunState.ABORTED
            raise

        self.state = RunState.ABORTED if aborted else RunState.COMPLETE
        logger.info(
            "Load finished (%s): %d users started, peak %d",
            self.state.value,
            self.started_actors,
            self.peak_actors,
        )
        return self.state

    def _should_abort(self) -> bool:
        if self.evaluator is None or self.registry is None:
            return False
        return self.evaluator.should_abort(self.registry.snapshot())

    def drain(self, raise_on_crash: bool = True) -> None:
        """
        Stop every actor and wait for in-flight iterations to finish.

        Args:
            raise_on_crash: Raise :class:`HarnessError` for the first
                crashed actor.  When false, crashes are logged instead.
        """
        self.state = RunState.DRAINING
        for actor in self._live:
            actor.stop()
        self._retired.extend(self._live)
        self._live = []

        for actor in self._retired:
            if not actor.join(self.drain_timeout):
                logger.warning("Virtual user %d did not stop within %ss", actor.index, self.drain_timeout)
        retired, self._retired = self._retired, []
        for actor in retired:
            if actor.failure is None:
                continue
            if raise_on_crash:
                _raise_if_crashed(actor)
            logger.error("Virtual user %d crashed during drain: %r", actor.index, actor.failure)


def _raise_if_crashed(actor: Actor) -> None:
    if actor.failure is not None:
        raise HarnessError(f"Virtual user {actor.index} crashed") from actor.failure
