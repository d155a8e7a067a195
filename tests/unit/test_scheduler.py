"""
Unit tests for the stage scheduler.

Actors are fakes that only record lifecycle calls, so each tick's
start/stop decisions can be asserted exactly.
"""

from __future__ import annotations

import logging

import pytest

from perf_harness.errors import HarnessError
from perf_harness.metrics import MetricRegistry
from perf_harness.scheduler import RunState, StageScheduler
from perf_harness.stages import Stage, StageSchedule
from perf_harness.thresholds import ThresholdEvaluator

pytestmark = pytest.mark.unit


class _FakeActor:
    def __init__(self, index: int):
        self.index = index
        self.failure = None
        self.started = False
        self.stopped = False
        self.joined = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout=None) -> bool:
        self.joined = True
        return True


class _ActorFactory:
    def __init__(self):
        self.actors: list[_FakeActor] = []

    def __call__(self, index: int) -> _FakeActor:
        actor = _FakeActor(index)
        self.actors.append(actor)
        return actor


def _scheduler(stages, **kwargs):
    factory = _ActorFactory()
    scheduler = StageScheduler(StageSchedule(stages), factory, **kwargs)
    return scheduler, factory


# =====================================================================
# reconcile()
# =====================================================================


def test_reconcile_starts_actors_up_to_desired_count():
    """Test that a tick starts exactly the missing actors with increasing indices."""
    # Arrange
    scheduler, factory = _scheduler([Stage(duration=10, target=10)])

    # Act
    desired = scheduler.reconcile(5)

    # Assert
    assert desired == 5
    assert scheduler.live_count == 5
    assert [actor.index for actor in factory.actors] == [1, 2, 3, 4, 5]
    assert all(actor.started for actor in factory.actors)


def test_reconcile_stops_newest_actors_first():
    """Test that scaling down stops the most recently started actors."""
    # Arrange
    scheduler, factory = _scheduler([Stage(duration=10, target=10), Stage(duration=10, target=0)])
    scheduler.reconcile(6)

    # Act
    scheduler.reconcile(16)

    # Assert -- desired at t=16 is 4
    stopped = sorted(actor.index for actor in factory.actors if actor.stopped)
    assert scheduler.live_count == 4
    assert stopped == [5, 6]


def test_target_zero_stops_every_actor():
    """Test that a zero target leaves no live actors."""
    # Arrange
    scheduler, factory = _scheduler([Stage(duration=5, target=3), Stage(duration=5, target=0)])
    scheduler.reconcile(5)

    # Act
    scheduler.reconcile(10)

    # Assert
    assert scheduler.live_count == 0
    assert all(actor.stopped for actor in factory.actors)
    assert scheduler.peak_actors == 3


def test_repeated_ticks_at_same_target_start_nobody_new():
    """Test that reconcile is idempotent when the desired count is unchanged."""
    scheduler, factory = _scheduler([Stage(duration=10, target=4), Stage(duration=10, target=4)])

    scheduler.reconcile(10)
    scheduler.reconcile(12)
    scheduler.reconcile(15)

    assert len(factory.actors) == 4
    assert scheduler.started_actors == 4


def test_stage_transitions_are_logged(caplog):
    """Test that entering a stage logs its number and target."""
    caplog.set_level(logging.INFO, logger="perf_harness.scheduler")
    scheduler, _ = _scheduler([Stage(duration=5, target=2), Stage(duration=5, target=0)])

    scheduler.reconcile(0)
    scheduler.reconcile(1)
    scheduler.reconcile(6)

    messages = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Stage ")]
    assert messages == [
        "Stage 1/2: ramping to 2 users over 5s",
        "Stage 2/2: ramping to 0 users over 5s",
    ]


class _CrashOnStopActor(_FakeActor):
    def stop(self) -> None:
        super().stop()
        self.failure = RuntimeError(f"user {self.index} broke while stopping")


def test_crashed_retired_actor_raises_harness_error():
    """Test that an internal defect in a stopped actor is surfaced, not swallowed."""
    # Arrange
    scheduler = StageScheduler(
        StageSchedule([Stage(duration=10, target=2), Stage(duration=10, target=0)]),
        _CrashOnStopActor,
    )
    scheduler.reconcile(10)

    # Act
    with pytest.raises(HarnessError) as excinfo:
        scheduler.reconcile(20)

    # Assert
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert scheduler.live_count == 0
    # Reaped actors are not reported twice
    scheduler.drain()


def test_crashed_live_actor_raises_on_next_tick():
    """Test that a crash in a running actor surfaces without waiting for ramp-down."""
    # Arrange
    scheduler, factory = _scheduler([Stage(duration=10, target=3)])
    scheduler.reconcile(10)
    factory.actors[0].failure = RuntimeError("boom")

    # Act
    with pytest.raises(HarnessError) as excinfo:
        scheduler.reconcile(10)

    # Assert
    assert excinfo.value.__cause__ is factory.actors[0].failure
    assert scheduler.live_count == 2


# =====================================================================
# run() / drain()
# =====================================================================


def test_run_completes_and_drains_every_actor():
    """Test a short real-time run: hold two users, then drain everything."""
    # Arrange
    scheduler, factory = _scheduler(
        [Stage(duration=0.1, target=2), Stage(duration=0.3, target=2)],
        tick_interval=0.02,
    )

    # Act
    state = scheduler.run()

    # Assert
    assert state is RunState.COMPLETE
    assert scheduler.state is RunState.COMPLETE
    assert scheduler.peak_actors == 2
    assert scheduler.live_count == 0
    assert all(actor.stopped and actor.joined for actor in factory.actors)


def test_run_resets_registry_clock():
    """Test that the registry's elapsed time starts when load starts."""
    registry = MetricRegistry()
    scheduler, _ = _scheduler([Stage(duration=0.05, target=1)], tick_interval=0.01, registry=registry)

    scheduler.run()

    assert registry.elapsed_seconds < 5


def test_request_abort_ends_run_early():
    """Test that an external abort drains actors and reports ABORTED."""
    # Arrange
    scheduler, factory = _scheduler([Stage(duration=60, target=5)], tick_interval=0.05)
    scheduler.request_abort()

    # Act
    state = scheduler.run()

    # Assert
    assert state is RunState.ABORTED
    assert all(actor.stopped for actor in factory.actors)


def test_abort_on_fail_threshold_ends_run_early():
    """Test that a breached abort_on_fail threshold stops the run mid-schedule."""
    # Arrange
    registry = MetricRegistry()
    registry.rate("errors")
    registry.record("errors", True)
    evaluator = ThresholdEvaluator({"errors": [{"threshold": "rate<0.1", "abort_on_fail": True}]})
    scheduler, _ = _scheduler(
        [Stage(duration=60, target=1)], tick_interval=0.05, registry=registry, evaluator=evaluator
    )

    # Act
    state = scheduler.run()

    # Assert
    assert state is RunState.ABORTED


def test_non_abortable_breach_does_not_end_run():
    """Test that an ordinary breached threshold lets the schedule finish."""
    registry = MetricRegistry()
    registry.rate("errors")
    registry.record("errors", True)
    evaluator = ThresholdEvaluator({"errors": ["rate<0.1"]})
    scheduler, _ = _scheduler(
        [Stage(duration=0.1, target=1)], tick_interval=0.02, registry=registry, evaluator=evaluator
    )

    assert scheduler.run() is RunState.COMPLETE


def test_run_cannot_be_repeated():
    """Test that a scheduler is single-use."""
    scheduler, _ = _scheduler([Stage(duration=0.02, target=1)], tick_interval=0.01)
    scheduler.run()

    with pytest.raises(RuntimeError):
        scheduler.run()


def test_drain_surfaces_crashed_actor():
    """Test that draining re-raises an actor's internal failure."""
    scheduler, factory = _scheduler([Stage(duration=10, target=3)])
    scheduler.reconcile(10)
    factory.actors[0].failure = ValueError("bad state")

    with pytest.raises(HarnessError):
        scheduler.drain()
    assert all(actor.stopped for actor in factory.actors)


class _CrashOnStartActor(_FakeActor):
    def start(self) -> None:
        super().start()
        self.failure = RuntimeError(f"user {self.index} broke")


def test_run_aborts_on_crashed_actor_and_keeps_first_error():
    """Test that a crash mid-run drains every actor, ends ABORTED and re-raises the crash."""
    # Arrange
    actors: list[_FakeActor] = []

    def factory(index):
        actor = _CrashOnStartActor(index) if index == 1 else _FakeActor(index)
        actors.append(actor)
        return actor

    scheduler = StageScheduler(
        StageSchedule([Stage(duration=0.05, target=2), Stage(duration=5, target=2)]),
        factory,
        tick_interval=0.01,
    )

    # Act
    with pytest.raises(HarnessError) as excinfo:
        scheduler.run()

    # Assert
    assert excinfo.value.__cause__ is actors[0].failure
    assert scheduler.state is RunState.ABORTED
    assert scheduler.live_count == 0
    assert all(actor.stopped for actor in actors[1:])


def test_drain_can_log_crashes_instead_of_raising(caplog):
    """Test that drain(raise_on_crash=False) reports crashed actors in the log."""
    scheduler, factory = _scheduler([Stage(duration=10, target=2)])
    scheduler.reconcile(10)
    factory.actors[1].failure = ValueError("bad state")

    with caplog.at_level(logging.ERROR, logger="perf_harness.scheduler"):
        scheduler.drain(raise_on_crash=False)

    assert "Virtual user 2 crashed during drain" in caplog.text
    assert all(actor.stopped for actor in factory.actors)


def test_invalid_tick_interval_is_rejected():
    """Test that a non-positive tick interval is a construction error."""
    with pytest.raises(ValueError):
        StageScheduler(StageSchedule([Stage(duration=1, target=1)]), _ActorFactory(), tick_interval=0)
