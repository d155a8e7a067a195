"""
Pass/fail thresholds over aggregated metrics.

Thresholds use the k6 expression syntax, keyed by metric name::

    http_req_duration:
      - "p(95)<500"
    errors:
      - threshold: "rate<0.1"
        abort_on_fail: true

The verdict that decides the run is computed once, at teardown, from
the full-run snapshot.  The scheduler also evaluates thresholds on every
tick; that continuous result is advisory and only ends a run early when
a threshold opts in with ``abort_on_fail``.

A metric that never received an observation fails its thresholds with
a "no data" status.  An absent measurement is never treated as a pass.

Key Concepts Demonstrated:
- Parse once, evaluate many: expressions are validated at construction
- Threshold breach as data (``ThresholdReport.passed``), not an exception
- Human-readable summary table for CI logs
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from perf_harness.errors import ThresholdSyntaxError
from perf_harness.metrics import MetricSnapshot, RegistrySnapshot

logger = logging.getLogger(__name__)

_EXPRESSION = re.compile(
    r"""^\s*
    (?P<aggregation>p\(\s*(?P<percentile>\d+(?:\.\d+)?)\s*\)|rate|avg|min|max|med|count)
    \s*(?P<operator><=|>=|==|!=|<|>)\s*
    (?P<limit>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)
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


@dataclass(frozen=True)
class Threshold:
    """
    One parsed predicate on one metric.

    Attributes:
        metric: Registry key the predicate reads.
        expression: The original expression text, e.g. ``"p(95)<500"``.
        aggregation: ``"p"``, ``"rate"``, ``"avg"``, ``"min"``,
            ``"max"``, ``"med"`` or ``"count"``.
        percentile: The percentile for ``"p"`` aggregations.
        operator: Comparison operator symbol.
        limit: Right-hand side of the comparison.
        abort_on_fail: End the run early if this breaches mid-run.
    """

    metric: str
    expression: str
    aggregation: str
    percentile: float | None
    operator: str
    limit: float
    abort_on_fail: bool = False

    @classmethod
    def parse(cls, metric: str, expression: str, abort_on_fail: bool = False) -> "Threshold":
        """
        Parse a k6-style threshold expression.

        Raises:
            ThresholdSyntaxError: If the expression is not understood or
                names a percentile outside ``[0, 100]``.
        """
        if not isinstance(expression, str):
            raise ThresholdSyntaxError(f"Threshold for {metric!r} must be a string: {expression!r}")

        match = _EXPRESSION.match(expression)
        if match is None:
            raise ThresholdSyntaxError(f"Cannot parse threshold {expression!r} for {metric!r}")

        percentile = None
        aggregation = match.group("aggregation")
        if match.group("percentile") is not None:
            percentile = float(match.group("percentile"))
            if percentile > 100.0:
                raise ThresholdSyntaxError(
                    f"Percentile out of range in {expression!r} for {metric!r}"
                )
            aggregation = "p"

        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=aggregation,
            percentile=percentile,
            operator=match.group("operator"),
            limit=float(match.group("limit")),
            abort_on_fail=bool(abort_on_fail),
        )

    def observe(self, metric: MetricSnapshot) -> float | None:
        """Read the statistic this threshold compares, or ``None`` if unavailable."""
        if self.aggregation == "p":
            return metric.percentile(self.percentile)
        return getattr(metric, self.aggregation)

    def holds_for(self, value: float) -> bool:
        return _OPERATORS[self.operator](value, self.limit)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float | None
    passed: bool
    no_data: bool = False

    @property
    def status(self) -> str:
        if self.no_data:
            return "NO DATA"
        return "PASS" if self.passed else "FAIL"

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.threshold.metric,
            "threshold": self.threshold.expression,
            "observed": self.observed,
            "passed": self.passed,
            "no_data": self.no_data,
        }


@dataclass(frozen=True)
class ThresholdReport:
    """Outcome of evaluating every configured threshold against one snapshot."""

    results: tuple[ThresholdResult, ...]

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failures(self) -> tuple[ThresholdResult, ...]:
        return tuple(result for result in self.results if not result.passed)

    def for_metric(self, metric: str) -> tuple[ThresholdResult, ...]:
        return tuple(result for result in self.results if result.threshold.metric == metric)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "results": [result.to_dict() for result in self.results],
        }

    def format_table(self) -> str:
        """Render a fixed-width results table for CI logs."""
        lines = [
            "Performance Threshold Check",
            "-" * 72,
            f"{'Metric':<32}{'Threshold':<16}{'Actual':>12}{'Status':>12}",
            "-" * 72,
        ]
        for result in self.results:
            actual = "-" if result.observed is None else f"{result.observed:.2f}"
            lines.append(
                f"{result.threshold.metric:<32}{result.threshold.expression:<16}"
                f"{actual:>12}{result.status:>12}"
            )
        lines.append("-" * 72)
        lines.append(f"Overall: {'PASS' if self.passed else 'FAIL'}")
        return "\n".join(lines)


class ThresholdEvaluator:
    """
    Holds the configured thresholds and evaluates them against snapshots.

    Args:
        config: Mapping of metric name to a list of expressions.  Each
            entry is either an expression string or a mapping with
            ``threshold`` and optional ``abort_on_fail`` keys.  A single
            string is accepted in place of a one-element list.

    Raises:
        ThresholdSyntaxError: If any expression is malformed.
    """

    def __init__(self, config: Mapping[str, Any] | None = None):
        self.thresholds: tuple[Threshold, ...] = tuple(_parse_config(config or {}))

    def __len__(self) -> int:
        return len(self.thresholds)

    def evaluate(self, snapshot: RegistrySnapshot) -> ThresholdReport:
        """Evaluate every threshold against ``snapshot``."""
        results = []
        for threshold in self.thresholds:
            metric = snapshot.get(threshold.metric)
            if metric is None or not metric.has_data:
                results.append(ThresholdResult(threshold, observed=None, passed=False, no_data=True))
                continue

            observed = threshold.observe(metric)
            passed = observed is not None and threshold.holds_for(observed)
            results.append(ThresholdResult(threshold, observed=observed, passed=passed))
        return ThresholdReport(results=tuple(results))

    def should_abort(self, snapshot: RegistrySnapshot) -> bool:
        """
        Advisory mid-run check for ``abort_on_fail`` thresholds.

        Thresholds without data yet are ignored here: early in a run a
        metric simply may not have been observed.
        """
        for threshold in self.thresholds:
            if not threshold.abort_on_fail:
                continue
            metric = snapshot.get(threshold.metric)
            if metric is None or not metric.has_data:
                continue
            observed = threshold.observe(metric)
            if observed is not None and not threshold.holds_for(observed):
                logger.warning(
                    "Threshold %s on %s breached mid-run (observed %.4f); aborting",
                    threshold.expression,
                    threshold.metric,
                    observed,
                )
                return True
        return False


def _parse_config(config: Mapping[str, Any]) -> Iterable[Threshold]:
    if not isinstance(config, Mapping):
        raise ThresholdSyntaxError(f"Thresholds must be a mapping, got {type(config).__name__}")

    for metric, entries in config.items():
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        if not isinstance(entries, Iterable):
            raise ThresholdSyntaxError(f"Thresholds for {metric!r} must be a list")

        for entry in entries:
            if isinstance(entry, Mapping):
                try:
                    expression = entry["threshold"]
                except KeyError as exc:
                    raise ThresholdSyntaxError(
                        f"Threshold entry for {metric!r} is missing 'threshold'"
                    ) from exc
                yield Threshold.parse(metric, expression, entry.get("abort_on_fail", False))
            else:
                yield Threshold.parse(metric, entry)
