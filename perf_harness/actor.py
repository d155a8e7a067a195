"""
Virtual user: the unit of concurrent load.

A :class:`VirtualUser` runs on its own thread and loops until the
scheduler tells it to stop::

    build request → call target → run checks → record metrics → think

Failed calls (bad status, malformed body, timeout, refused connection)
are recorded and logged, never retried and never fatal.  A stop
directive is cooperative: the in-flight call always completes and is
recorded, the think-time sleep is cut short, and the thread exits.

Key Concepts Demonstrated:
- Cooperative cancellation with ``threading.Event`` (``wait`` doubles as
  an interruptible sleep)
- One ``requests.Session`` per virtual user for connection reuse without
  sharing sockets between threads
- k6-compatible metric names so thresholds read the same as the
  original ``options.thresholds`` block
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

import requests

from perf_harness.checks import CallResult, Check, run_checks, safe_json
from perf_harness.generator import RequestGenerator, RequestRecord
from perf_harness.metrics import MetricRegistry

logger = logging.getLogger(__name__)

# Built-in metric names (k6 conventions) plus the two custom metrics the
# payment-intent scenario defines.
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
CHECKS = "checks"
ERRORS = "errors"
PAYMENT_INTENT_CREATION_TIME = "payment_intent_creation_time"

# Failure log lines are truncated so one huge error page cannot flood the log.
_MAX_LOGGED_BODY = 500


class ActorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    BUILD_REQUEST = "build_request"
    CALLING = "calling"
    OBSERVING = "observing"
    SLEEPING = "sleeping"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ActorSettings:
    """
    Per-run settings shared by every virtual user.

    Attributes:
        target_url: Full URL of the payment-intent endpoint.
        think_time: Seconds to pause between iterations.
        request_timeout: Limit in seconds for a whole call.  It is passed to
            requests, which applies it to each connect and read wait; a
            response that arrives after the limit is still recorded as a
            failed call (status 0, "timeout" error).
        checks: Checks every response must pass.
    """

    target_url: str
    think_time: float
    request_timeout: float
    checks: tuple[Check, ...]


def declare_metrics(registry: MetricRegistry) -> None:
    """
    Create every metric a virtual user records into.

    Declaring up front means a metric that never receives data still
    appears in the registry, so thresholds on it report "no data" rather
    than silently vanishing.
    """
    registry.counter(HTTP_REQS)
    registry.counter(ITERATIONS)
    registry.trend(HTTP_REQ_DURATION)
    registry.trend(ITERATION_DURATION)
    registry.trend(PAYMENT_INTENT_CREATION_TIME)
    registry.rate(HTTP_REQ_FAILED)
    registry.rate(CHECKS)
    registry.rate(ERRORS)


class VirtualUser:
    """
    One independent stream of sequential payment-intent requests.

    Args:
        index: Monotonically assigned user number (starts at 1).
        registry: Shared metric registry for the run.
        settings: Target URL, think-time, timeout and checks.
        generator: Request factory; defaults to an unseeded one.
        session: HTTP session; defaults to a new ``requests.Session``.
        clock: High-resolution timer used to measure calls.
    """

    def __init__(
        self,
        index: int,
        registry: MetricRegistry,
        settings: ActorSettings,
        *,
        generator: RequestGenerator | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.index = index
        self.registry = registry
        self.settings = settings
        self.generator = generator or RequestGenerator()
        self.session = session or requests.Session()
        self.iterations = 0
        self.failure: BaseException | None = None
        self._clock = clock
        self._phase = ActorState.IDLE
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def __repr__(self) -> str:
        return f"VirtualUser(index={self.index}, state={self.state.value}, iterations={self.iterations})"

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    @property
    def state(self) -> ActorState:
        phase = self._phase
        if phase in (ActorState.IDLE, ActorState.STOPPED):
            return phase
        if self._stop_event.is_set():
            return ActorState.DRAINING
        return phase

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the iteration loop on a background thread."""
        if self._thread is not None:
            raise RuntimeError(f"Virtual user {self.index} was already started")
        self._phase = ActorState.RUNNING
        self._thread = threading.Thread(target=self._run, name=f"vu-{self.index}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Ask the user to finish its current iteration and exit."""
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the thread to exit; return True if it has."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                started = self._clock()
                self.run_iteration()
                if not self._stop_event.is_set():
                    self._phase = ActorState.SLEEPING
                    self._stop_event.wait(self.settings.think_time)
                self.registry.record(ITERATION_DURATION, (self._clock() - started) * 1000.0)
        except Exception as exc:
            # Only internal defects reach here; request failures are recorded.
            self.failure = exc
            logger.exception("Virtual user %d crashed", self.index)
        finally:
            self.session.close()
            self._phase = ActorState.STOPPED

    # -----------------------------------------------------------------
    # One iteration
    # -----------------------------------------------------------------

    def run_iteration(self) -> bool:
        """
        Execute one build → call → observe step (no think-time).

        Returns:
            ``True`` when every check passed.
        """
        self._phase = ActorState.BUILD_REQUEST
        record = self.generator.build(self.index, self.iterations)

        self._phase = ActorState.CALLING
        result = self.call(record)

        self._phase = ActorState.OBSERVING
        passed = self.observe(result, self.settings.checks)
        self.iterations += 1
        return passed

    def call(self, record: RequestRecord) -> CallResult:
        """POST one record to the target, converting transport errors to results."""
        started = self._clock()
        try:
            response = self.session.post(
                self.settings.target_url,
                json=record.payload(),
                headers=record.headers(),
                timeout=self.settings.request_timeout,
            )
        except requests.Timeout as exc:
            elapsed_ms = (self._clock() - started) * 1000.0
            return CallResult(status_code=0, elapsed_ms=elapsed_ms, error=f"timeout: {exc}")
        except requests.RequestException as exc:
            elapsed_ms = (self._clock() - started) * 1000.0
            return CallResult(status_code=0, elapsed_ms=elapsed_ms, error=str(exc))

        elapsed_ms = (self._clock() - started) * 1000.0
        limit = self.settings.request_timeout
        if elapsed_ms > limit * 1000.0:
            # requests only bounds each connect/read wait, not the whole call.
            return CallResult(
                status_code=0,
                elapsed_ms=elapsed_ms,
                error=f"timeout: response took {elapsed_ms:.0f}ms (limit {limit:g}s)",
            )
        return CallResult(
            status_code=response.status_code,
            elapsed_ms=elapsed_ms,
            body=safe_json(response),
            text=response.text,
        )

    def observe(self, result: CallResult, checks: Sequence[Check]) -> bool:
        """Run checks on ``result`` and record every observation it yields."""
        outcome = run_checks(checks, result)
        passed = all(outcome.values())

        registry = self.registry
        registry.record(HTTP_REQS, 1, tags={"status": result.status_code})
        registry.record(HTTP_REQ_DURATION, result.elapsed_ms)
        registry.record(HTTP_REQ_FAILED, result.http_failed)
        registry.record(PAYMENT_INTENT_CREATION_TIME, result.elapsed_ms)
        for name, ok in outcome.items():
            registry.record(CHECKS, ok, tags={"check": name})
        registry.record(ERRORS, not passed)
        registry.record(ITERATIONS, 1)

        if not passed:
            detail = result.error if result.transport_failed else result.text
            logger.warning(
                "Request failed: %s - %s", result.status_code, (detail or "")[:_MAX_LOGGED_BODY]
            )
        return passed
