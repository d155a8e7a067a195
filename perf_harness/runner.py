"""
Run orchestration: setup → load → teardown → verdict → artifacts.

:class:`LoadTestRun` wires the pieces together for one run:

1. **Setup**: ``GET /healthz`` must answer 200.  A failure is logged
   and reported as ``RunOutcome.SETUP_FAILED``; no load is generated and
   nothing is raised to the caller.
2. **Load**: a :class:`~perf_harness.scheduler.StageScheduler` ramps
   :class:`~perf_harness.actor.VirtualUser` threads through the stages,
   all recording into one fresh :class:`~perf_harness.metrics.MetricRegistry`.
3. **Teardown**: the final snapshot is taken after every user has
   stopped, thresholds are evaluated once against it, and the report
   artifacts are written.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import requests

from perf_harness.actor import ActorSettings, VirtualUser, declare_metrics
from perf_harness.checks import default_checks
from perf_harness.config import Config
from perf_harness.errors import SetupError
from perf_harness.generator import RequestGenerator
from perf_harness.health import build_url, check_health, wait_for_healthy
from perf_harness.metrics import MetricRegistry, RegistrySnapshot
from perf_harness.report import write_artifacts
from perf_harness.scheduler import RunState, StageScheduler
from perf_harness.stages import StageSchedule
from perf_harness.thresholds import ThresholdEvaluator, ThresholdReport

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ABORTED = "aborted"
    SETUP_FAILED = "setup_failed"


@dataclass(frozen=True)
class RunResult:
    """
    Everything a caller needs after a run.

    Attributes:
        outcome: Overall verdict.
        snapshot: Final metric snapshot (``None`` if setup failed).
        thresholds: Threshold evaluation against the final snapshot.
        started_at: UTC time the run began (before the health check).
        finished_at: UTC time teardown finished.
        error: Setup error message, when ``outcome`` is ``SETUP_FAILED``.
        artifacts: Paths of the report files that were written.
    """

    outcome: RunOutcome
    snapshot: RegistrySnapshot | None
    thresholds: ThresholdReport | None
    started_at: datetime
    finished_at: datetime
    error: str | None = None
    artifacts: dict[str, Path] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.outcome is RunOutcome.PASSED


class LoadTestRun:
    """
    One configured load test against the payment simulator.

    Construction validates the stage list and threshold expressions, so
    configuration mistakes surface before any traffic is sent.

    Raises:
        ConfigError: On an invalid stage or threshold definition.
    """

    def __init__(
        self,
        *,
        base_url: str,
        stages: list[Any] | StageSchedule,
        thresholds: Mapping[str, Any] | None = None,
        intent_path: str = "/v1/sim/intent",
        health_path: str = "/healthz",
        think_time: float = 0.1,
        request_timeout: float = 10.0,
        health_timeout: float = 5.0,
        health_wait: float = 0.0,
        latency_ceiling_ms: float = 500.0,
        tick_interval: float = 1.0,
        seed: int | None = None,
        output_dir: str | Path | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.base_url = base_url
        self.schedule = stages if isinstance(stages, StageSchedule) else StageSchedule(stages)
        self.evaluator = ThresholdEvaluator(thresholds)
        self.health_path = health_path
        self.health_timeout = health_timeout
        self.health_wait = health_wait
        self.tick_interval = tick_interval
        self.seed = seed
        self.output_dir = Path(output_dir) if output_dir is not None else None
        self.session_factory = session_factory
        self.settings = ActorSettings(
            target_url=build_url(base_url, intent_path),
            think_time=think_time,
            request_timeout=request_timeout,
            checks=default_checks(latency_ceiling_ms=latency_ceiling_ms),
        )
        self.registry: MetricRegistry | None = None
        self.scheduler: StageScheduler | None = None

    @classmethod
    def from_config(cls, config_class: type[Config], **overrides: Any) -> "LoadTestRun":
        """Build a run from a config class; keyword overrides win."""
        options: dict[str, Any] = {
            "base_url": config_class.BASE_URL,
            "stages": config_class.stages(),
            "thresholds": config_class.thresholds(),
            "intent_path": config_class.INTENT_PATH,
            "health_path": config_class.HEALTH_PATH,
            "think_time": config_class.THINK_TIME,
            "request_timeout": config_class.REQUEST_TIMEOUT,
            "health_timeout": config_class.HEALTH_TIMEOUT,
            "latency_ceiling_ms": config_class.LATENCY_CEILING_MS,
            "tick_interval": config_class.TICK_INTERVAL,
            "seed": config_class.SEED,
            "output_dir": config_class.OUTPUT_DIR,
        }
        options.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**options)

    def _make_actor(self, index: int) -> VirtualUser:
        seed = None if self.seed is None else self.seed + index
        return VirtualUser(
            index,
            self.registry,
            self.settings,
            generator=RequestGenerator(seed),
            session=self.session_factory(),
        )

    def _setup(self) -> None:
        if self.health_wait > 0:
            wait_for_healthy(self.base_url, self.health_path, timeout=self.health_wait)
        else:
            check_health(self.base_url, self.health_path, timeout=self.health_timeout)

    def run(self) -> RunResult:
        """
        Execute the run end to end.

        Returns:
            A :class:`RunResult`; setup failures and threshold breaches
            are reported through ``outcome``, not raised.

        Raises:
            HarnessError: If a virtual user crashed with an internal defect.
        """
        started_at = datetime.now(timezone.utc)
        logger.info("Starting Payment Simulator API Load Test")
        logger.info("Target URL: %s", self.base_url)

        try:
            self._setup()
        except SetupError as exc:
            logger.error("%s; aborting before any load is generated", exc)
            return RunResult(
                outcome=RunOutcome.SETUP_FAILED,
                snapshot=None,
                thresholds=None,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                error=str(exc),
            )

        self.registry = MetricRegistry()
        declare_metrics(self.registry)
        self.scheduler = StageScheduler(
            self.schedule,
            self._make_actor,
            tick_interval=self.tick_interval,
            registry=self.registry,
            evaluator=self.evaluator,
        )
        final_state = self.scheduler.run()

        snapshot = self.registry.snapshot()
        verdict = self.evaluator.evaluate(snapshot)
        for failure in verdict.failures:
            logger.warning(
                "Threshold %s on %s failed (%s)",
                failure.threshold.expression,
                failure.threshold.metric,
                "no data" if failure.no_data else f"observed {failure.observed:.4f}",
            )

        if final_state is RunState.ABORTED:
            outcome = RunOutcome.ABORTED
        else:
            outcome = RunOutcome.PASSED if verdict.passed else RunOutcome.FAILED

        finished_at = datetime.now(timezone.utc)
        artifacts: dict[str, Path] = {}
        if self.output_dir is not None:
            artifacts = write_artifacts(
                self.output_dir,
                snapshot,
                verdict,
                run=self._run_info(outcome, started_at, finished_at),
            )

        logger.info("Load test completed: %s", outcome.value)
        logger.info("Test started at: %s", started_at.isoformat())
        logger.info("Test completed at: %s", finished_at.isoformat())
        return RunResult(
            outcome=outcome,
            snapshot=snapshot,
            thresholds=verdict,
            started_at=started_at,
            finished_at=finished_at,
            artifacts=artifacts,
        )

    def _run_info(
        self, outcome: RunOutcome, started_at: datetime, finished_at: datetime
    ) -> dict[str, Any]:
        scheduler = self.scheduler
        return {
            "base_url": self.base_url,
            "target_url": self.settings.target_url,
            "outcome": outcome.value,
            "started_at": started_at.isoformat(),
            "finished_at": finished_at.isoformat(),
            "stages": [
                {"duration": stage.duration, "target": stage.target}
                for stage in self.schedule.stages
            ],
            "think_time": self.settings.think_time,
            "request_timeout": self.settings.request_timeout,
            "peak_vus": scheduler.peak_actors if scheduler else 0,
            "vus_started": scheduler.started_actors if scheduler else 0,
        }
