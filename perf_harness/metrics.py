"""
Metric registry for load-test observations.

Every virtual user feeds its observations into one explicitly owned
:class:`MetricRegistry`.  The registry never keeps individual
observations; each metric folds values into a fixed-size aggregate:

- :class:`Counter`: a monotonic sum (``http_reqs``, ``iterations``).
- :class:`Rate`: the fraction of truthy observations (``errors``,
  ``http_req_failed``, ``checks``).
- :class:`Trend`: count/sum/min/max plus a logarithmic bucket
  histogram that answers any percentile with bounded relative error
  (``http_req_duration``).

Tagged observations also feed a sub-metric keyed ``name{tag:value}``,
the naming convention k6 uses for per-check and per-status breakdowns.

Key Concepts Demonstrated:
- Per-metric locks: writers to different metrics never contend, and no
  cross-metric transaction is needed because metrics are independent
- Bounded memory: a Trend's size depends on the value range, not on the
  number of observations
- Immutable snapshots (frozen dataclasses behind a read-only mapping)
  so reporting can never mutate live aggregation state
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from perf_harness.errors import MetricTypeError

# Percentiles every report includes for Trend metrics.
REPORTED_PERCENTILES = (90.0, 95.0, 99.0)

DEFAULT_RELATIVE_ACCURACY = 0.01

# Values at or below this land in the zero bucket.
_MIN_INDEXABLE_VALUE = 1e-9


class MetricKind(str, Enum):
    """The three aggregate shapes a metric can take."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"


def metric_key(name: str, tags: Mapping[str, Any] | None = None) -> str:
    """
    Build the registry key for a metric and optional tag set.

    Tags are sorted so the same tag set always maps to the same key.

    Example::

        metric_key("checks", {"check": "status is 200"})
        # -> "checks{check:status is 200}"
    """
    if not tags:
        return name
    rendered = ",".join(f"{key}:{tags[key]}" for key in sorted(tags))
    return f"{name}{{{rendered}}}"


def percentile_label(p: float) -> str:
    """Return the k6-style label for a percentile, e.g. ``p(95)``."""
    return f"p({p:g})"


# =====================================================================
# Immutable snapshot types
# =====================================================================


@dataclass(frozen=True)
class MetricSnapshot:
    """
    Point-in-time view of one metric.

    Attributes:
        name: Registry key (including any ``{tag:value}`` suffix).
        kind: Counter, Rate or Trend.
        observations: How many times the metric was recorded to.
        total: Sum of recorded values (Counter and Trend).
        passes: Number of truthy observations (Rate only).
        minimum: Smallest recorded value (Trend only).
        maximum: Largest recorded value (Trend only).
        zero_count: Trend observations that fell in the zero bucket.
        buckets: Sorted ``(bucket_index, count)`` pairs of the histogram.
        gamma: Histogram bucket growth factor.
        elapsed_seconds: Run time at snapshot, used for per-second rates.
    """

    name: str
    kind: MetricKind
    observations: int
    total: float = 0.0
    passes: int = 0
    minimum: float | None = None
    maximum: float | None = None
    zero_count: int = 0
    buckets: tuple[tuple[int, int], ...] = ()
    gamma: float = 0.0
    elapsed_seconds: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.observations > 0

    @property
    def count(self) -> float:
        """Counter: the accumulated sum.  Rate/Trend: number of observations."""
        if self.kind is MetricKind.COUNTER:
            return int(self.total) if float(self.total).is_integer() else self.total
        return self.observations

    @property
    def fails(self) -> int:
        return self.observations - self.passes

    @property
    def rate(self) -> float | None:
        """Rate: fraction of truthy observations.  Counter: sum per second."""
        if self.kind is MetricKind.RATE:
            if not self.observations:
                return None
            return self.passes / self.observations
        if self.kind is MetricKind.COUNTER:
            return self.per_second
        return None

    @property
    def per_second(self) -> float | None:
        if self.elapsed_seconds <= 0:
            return None
        if self.kind is MetricKind.COUNTER:
            return self.total / self.elapsed_seconds
        return self.observations / self.elapsed_seconds

    @property
    def avg(self) -> float | None:
        if self.kind is not MetricKind.TREND or not self.observations:
            return None
        return self.total / self.observations

    @property
    def min(self) -> float | None:
        return self.minimum

    @property
    def max(self) -> float | None:
        return self.maximum

    @property
    def med(self) -> float | None:
        return self.percentile(50.0)

    def percentile(self, p: float) -> float | None:
        """
        Return the ``p``-th percentile (0–100) of a Trend.

        The value comes from the histogram bucket holding the requested
        rank, clamped to the exact observed min/max.  Relative error is
        bounded by the registry's configured accuracy.

        Returns:
            The percentile value, or ``None`` for an empty or non-Trend
            metric.

        Raises:
            ValueError: If ``p`` is outside ``[0, 100]``.
        """
        if not 0.0 <= p <= 100.0:
            raise ValueError(f"Percentile must be within [0, 100], got {p}")
        if self.kind is not MetricKind.TREND or not self.observations:
            return None
        if p == 0.0:
            return self.minimum
        if p == 100.0:
            return self.maximum

        rank = p / 100.0 * (self.observations - 1)
        seen = self.zero_count
        if rank < seen:
            return _clamp(0.0, self.minimum, self.maximum)

        for index, bucket_count in self.buckets:
            seen += bucket_count
            if rank < seen:
                return _clamp(_bucket_value(index, self.gamma), self.minimum, self.maximum)
        return self.maximum

    def values(self) -> dict[str, float | int | None]:
        """Return the summary values a report shows for this metric kind."""
        if self.kind is MetricKind.COUNTER:
            return {"count": self.count, "rate": self.rate}
        if self.kind is MetricKind.RATE:
            return {"rate": self.rate, "passes": self.passes, "fails": self.fails}

        summary: dict[str, float | int | None] = {
            "avg": self.avg,
            "min": self.min,
            "med": self.med,
            "max": self.max,
        }
        for p in REPORTED_PERCENTILES:
            summary[percentile_label(p)] = self.percentile(p)
        summary["count"] = self.count
        return summary


@dataclass(frozen=True)
class RegistrySnapshot:
    """
    Immutable view of every metric at one instant.

    Consistency is per metric: each :class:`MetricSnapshot` is internally
    consistent, but two metrics may have been read a few microseconds
    apart while actors were still recording.
    """

    metrics: Mapping[str, MetricSnapshot]
    elapsed_seconds: float
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get(self, name: str) -> MetricSnapshot | None:
        return self.metrics.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.metrics

    def __iter__(self) -> Iterator[str]:
        return iter(self.metrics)

    def __len__(self) -> int:
        return len(self.metrics)

    def to_dict(self) -> dict[str, Any]:
        """Serialisable form used by the raw JSON export."""
        return {
            "elapsed_seconds": self.elapsed_seconds,
            "taken_at": self.taken_at.isoformat(),
            "metrics": {
                name: {"type": metric.kind.value, "values": metric.values()}
                for name, metric in sorted(self.metrics.items())
            },
        }


# =====================================================================
# Live metrics
# =====================================================================


class Metric:
    """Base class: a named aggregate guarded by its own lock."""

    kind: MetricKind

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._observations = 0

    def add(self, value: Any) -> None:
        raise NotImplementedError

    def snapshot(self, elapsed_seconds: float) -> MetricSnapshot:
        raise NotImplementedError


class Counter(Metric):
    """Monotonic sum.  Negative increments are rejected."""

    kind = MetricKind.COUNTER

    def __init__(self, name: str):
        super().__init__(name)
        self._total = 0.0

    def add(self, value: float = 1) -> None:
        if value < 0:
            raise ValueError(f"Counter {self.name!r} cannot decrease (got {value})")
        with self._lock:
            self._total += value
            self._observations += 1

    def snapshot(self, elapsed_seconds: float) -> MetricSnapshot:
        with self._lock:
            return MetricSnapshot(
                name=self.name,
                kind=self.kind,
                observations=self._observations,
                total=self._total,
                elapsed_seconds=elapsed_seconds,
            )


class Rate(Metric):
    """Tracks how many observations were truthy."""

    kind = MetricKind.RATE

    def __init__(self, name: str):
        super().__init__(name)
        self._passes = 0

    def add(self, value: Any) -> None:
        with self._lock:
            if value:
                self._passes += 1
            self._observations += 1

    def snapshot(self, elapsed_seconds: float) -> MetricSnapshot:
        with self._lock:
            return MetricSnapshot(
                name=self.name,
                kind=self.kind,
                observations=self._observations,
                passes=self._passes,
                elapsed_seconds=elapsed_seconds,
            )


class Trend(Metric):
    """
    Running statistics with a log-bucket histogram for percentiles.

    Bucket ``i`` covers ``(gamma**(i-1), gamma**i]`` where
    ``gamma = (1 + a) / (1 - a)`` for relative accuracy ``a``.  Reporting
    the bucket midpoint ``2 * gamma**i / (gamma + 1)`` keeps every
    percentile within ``a`` of a value actually observed.  Values are
    expected to be non-negative (durations); anything at or below zero is
    counted in a dedicated zero bucket.
    """

    kind = MetricKind.TREND

    def __init__(self, name: str, relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY):
        if not 0.0 < relative_accuracy < 1.0:
            raise ValueError("relative_accuracy must be between 0 and 1")
        super().__init__(name)
        self._gamma = (1.0 + relative_accuracy) / (1.0 - relative_accuracy)
        self._log_gamma = math.log(self._gamma)
        self._buckets: dict[int, int] = {}
        self._zero_count = 0
        self._total = 0.0
        self._min: float | None = None
        self._max: float | None = None

    def add(self, value: float) -> None:
        value = float(value)
        if math.isnan(value):
            raise ValueError(f"Trend {self.name!r} cannot record NaN")

        index = None
        if value > _MIN_INDEXABLE_VALUE:
            index = math.ceil(math.log(value) / self._log_gamma)

        with self._lock:
            if index is None:
                self._zero_count += 1
            else:
                self._buckets[index] = self._buckets.get(index, 0) + 1
            self._total += value
            self._observations += 1
            if self._min is None or value < self._min:
                self._min = value
            if self._max is None or value > self._max:
                self._max = value

    def snapshot(self, elapsed_seconds: float) -> MetricSnapshot:
        with self._lock:
            return MetricSnapshot(
                name=self.name,
                kind=self.kind,
                observations=self._observations,
                total=self._total,
                minimum=self._min,
                maximum=self._max,
                zero_count=self._zero_count,
                buckets=tuple(sorted(self._buckets.items())),
                gamma=self._gamma,
                elapsed_seconds=elapsed_seconds,
            )


_METRIC_CLASSES: dict[MetricKind, type[Metric]] = {
    MetricKind.COUNTER: Counter,
    MetricKind.RATE: Rate,
    MetricKind.TREND: Trend,
}


class MetricRegistry:
    """
    Owns every metric for one load-test run.

    The registry lock only guards the name → metric map (metric creation
    and snapshot enumeration); recording takes the lock of the single
    metric being written.

    Args:
        clock: Monotonic time source used for per-second rates.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._metrics: dict[str, Metric] = {}
        self._started_at = clock()

    def start_clock(self) -> None:
        """Reset the run-time origin; called when load generation begins."""
        self._started_at = self._clock()

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._started_at

    def counter(self, name: str) -> Counter:
        return self._get_or_create(name, MetricKind.COUNTER)  # type: ignore[return-value]

    def rate(self, name: str) -> Rate:
        return self._get_or_create(name, MetricKind.RATE)  # type: ignore[return-value]

    def trend(self, name: str) -> Trend:
        return self._get_or_create(name, MetricKind.TREND)  # type: ignore[return-value]

    def _get_or_create(self, key: str, kind: MetricKind) -> Metric:
        with self._lock:
            metric = self._metrics.get(key)
            if metric is None:
                metric = _METRIC_CLASSES[kind](key)
                self._metrics[key] = metric
            elif metric.kind is not kind:
                raise MetricTypeError(
                    f"Metric {key!r} is a {metric.kind.value}, not a {kind.value}"
                )
            return metric

    def record(self, name: str, value: Any, tags: Mapping[str, Any] | None = None) -> None:
        """
        Fold one observation into a declared metric.

        When ``tags`` are given the value is also recorded into the
        ``name{tag:value}`` sub-metric, created on first use with the
        parent's kind.

        Raises:
            MetricTypeError: If ``name`` was never declared.
        """
        with self._lock:
            metric = self._metrics.get(name)
        if metric is None:
            raise MetricTypeError(f"Metric {name!r} has not been declared")

        metric.add(value)
        if tags:
            self._get_or_create(metric_key(name, tags), metric.kind).add(value)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._metrics)

    def snapshot(self) -> RegistrySnapshot:
        """Capture an immutable, per-metric consistent view of all metrics."""
        with self._lock:
            metrics = list(self._metrics.values())
        elapsed = self.elapsed_seconds
        captured = {metric.name: metric.snapshot(elapsed) for metric in metrics}
        return RegistrySnapshot(metrics=MappingProxyType(captured), elapsed_seconds=elapsed)


def _bucket_value(index: int, gamma: float) -> float:
    return 2.0 * gamma**index / (gamma + 1.0)


def _clamp(value: float, lower: float | None, upper: float | None) -> float:
    if lower is not None and value < lower:
        return lower
    if upper is not None and value > upper:
        return upper
    return value
