"""
Report builder: final snapshot → text, HTML and JSON artifacts.

Every function here is pure over an immutable
:class:`~perf_harness.metrics.RegistrySnapshot` and
:class:`~perf_harness.thresholds.ThresholdReport`.  Nothing reads or
mutates the live registry.

Missing data degrades gracefully: a metric that is absent from the
snapshot, or that never received an observation, simply has its line
left out.  One missing metric never blanks the whole report.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from jinja2 import Environment, PackageLoader, select_autoescape

from perf_harness.actor import (
    CHECKS,
    ERRORS,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    ITERATION_DURATION,
    ITERATIONS,
    PAYMENT_INTENT_CREATION_TIME,
)
from perf_harness.metrics import MetricKind, RegistrySnapshot
from perf_harness.thresholds import ThresholdReport

logger = logging.getLogger(__name__)

REPORT_TITLE = "Payment Simulator API Load Test"

TEXT_FILENAME = "summary.txt"
HTML_FILENAME = "summary.html"
JSON_FILENAME = "results.json"

_CHECK_PREFIX = f"{CHECKS}{{check:"

_environment = Environment(
    loader=PackageLoader("perf_harness", "templates"),
    autoescape=select_autoescape(["html"]),
)


# =====================================================================
# Value lookup helpers
# =====================================================================


def _value(snapshot: RegistrySnapshot, metric: str, key: str) -> Any:
    """Return one summary value, or ``None`` if the metric or value is missing."""
    entry = snapshot.get(metric)
    if entry is None or not entry.has_data:
        return None
    return entry.values().get(key)


def _ms(value: float) -> str:
    return f"{round(value)}ms"


def _percent(value: float) -> str:
    return f"{value * 100:.2f}%"


def _lines(rows: list[tuple[str, Any, Callable[[Any], str]]]) -> list[tuple[str, str]]:
    """Format ``(label, raw, formatter)`` rows, dropping any with no value."""
    return [(label, fmt(raw)) for label, raw, fmt in rows if raw is not None]


def _summary_rows(snapshot: RegistrySnapshot) -> list[tuple[str, str]]:
    return _lines(
        [
            ("Run duration", snapshot.elapsed_seconds, lambda v: f"{v:.1f}s"),
            ("Total requests", _value(snapshot, HTTP_REQS, "count"), str),
            ("Iterations", _value(snapshot, ITERATIONS, "count"), str),
            ("Avg iteration", _value(snapshot, ITERATION_DURATION, "avg"), _ms),
            ("Throughput", _value(snapshot, HTTP_REQS, "rate"), lambda v: f"{round(v)} req/sec"),
        ]
    )


def _performance_rows(snapshot: RegistrySnapshot) -> list[tuple[str, str]]:
    return _lines(
        [
            ("Average response time", _value(snapshot, HTTP_REQ_DURATION, "avg"), _ms),
            ("95th percentile", _value(snapshot, HTTP_REQ_DURATION, "p(95)"), _ms),
            ("99th percentile", _value(snapshot, HTTP_REQ_DURATION, "p(99)"), _ms),
            (
                "Payment intent creation (avg)",
                _value(snapshot, PAYMENT_INTENT_CREATION_TIME, "avg"),
                _ms,
            ),
            (
                "Payment intent creation (p95)",
                _value(snapshot, PAYMENT_INTENT_CREATION_TIME, "p(95)"),
                _ms,
            ),
        ]
    )


def _error_rows(snapshot: RegistrySnapshot) -> list[tuple[str, str, bool]]:
    rows = []
    for label, metric in (("HTTP errors", HTTP_REQ_FAILED), ("Custom errors", ERRORS)):
        rate = _value(snapshot, metric, "rate")
        if rate is not None:
            rows.append((label, _percent(rate), rate > 0.1))
    return rows


def _check_rows(snapshot: RegistrySnapshot) -> list[tuple[str, str, int, int]]:
    rows = []
    for name in sorted(snapshot):
        if not name.startswith(_CHECK_PREFIX):
            continue
        entry = snapshot.get(name)
        if entry is None or entry.kind is not MetricKind.RATE or not entry.has_data:
            continue
        rows.append((name[len(_CHECK_PREFIX):-1], _percent(entry.rate), entry.passes, entry.fails))
    return rows


# =====================================================================
# Renderers
# =====================================================================


def build_text_summary(
    snapshot: RegistrySnapshot,
    thresholds: ThresholdReport | None = None,
    title: str = REPORT_TITLE,
) -> str:
    """
    Render the human-readable run summary printed at the end of a run.

    Args:
        snapshot: Final metrics snapshot.
        thresholds: Verdict to append as a results table, if any.
        title: Heading line.

    Returns:
        The summary as a multi-line string.
    """
    heading = f"{title} Summary"
    lines = [heading, "=" * len(heading), ""]

    for label, value in _summary_rows(snapshot):
        lines.append(f"{label}: {value}")

    performance = _performance_rows(snapshot)
    if performance:
        lines.extend(["", "Latency:"])
        lines.extend(f"  - {label}: {value}" for label, value in performance)

    errors = _error_rows(snapshot)
    if errors:
        lines.extend(["", "Error rates:"])
        lines.extend(f"  - {label}: {value}" for label, value, _ in errors)

    checks = _check_rows(snapshot)
    if checks:
        lines.extend(["", "Checks:"])
        lines.extend(
            f"  - {name}: {rate} ({passes} passed, {fails} failed)"
            for name, rate, passes, fails in checks
        )

    if thresholds is not None and thresholds.results:
        lines.extend(["", thresholds.format_table()])

    return "\n".join(lines) + "\n"


def build_html_report(
    snapshot: RegistrySnapshot,
    thresholds: ThresholdReport | None = None,
    title: str = REPORT_TITLE,
) -> str:
    """Render the standalone HTML report."""
    threshold_rows = []
    if thresholds is not None:
        for result in thresholds.results:
            threshold_rows.append(
                {
                    "metric": result.threshold.metric,
                    "threshold": result.threshold.expression,
                    "observed": "-" if result.observed is None else f"{result.observed:.2f}",
                    "status": result.status,
                    "passed": result.passed,
                }
            )

    template = _environment.get_template("report.html")
    return template.render(
        title=f"{title} Report",
        passed=thresholds.passed if thresholds is not None else True,
        summary_rows=_summary_rows(snapshot),
        performance_rows=_performance_rows(snapshot),
        error_rows=_error_rows(snapshot),
        check_rows=_check_rows(snapshot),
        threshold_rows=threshold_rows,
    )


def build_json_export(
    snapshot: RegistrySnapshot,
    thresholds: ThresholdReport | None = None,
    run: Mapping[str, Any] | None = None,
) -> str:
    """
    Serialise the raw snapshot (plus verdict and run info) to JSON.

    Numeric values are written with full float precision, so reading the
    file back yields exactly what the snapshot accessors return.
    """
    document: dict[str, Any] = {"run": dict(run or {})}
    document.update(snapshot.to_dict())
    if thresholds is not None:
        document["thresholds"] = thresholds.to_dict()
    return json.dumps(document, indent=2, default=str)


def write_artifacts(
    out_dir: str | Path,
    snapshot: RegistrySnapshot,
    thresholds: ThresholdReport | None = None,
    run: Mapping[str, Any] | None = None,
) -> dict[str, Path]:
    """
    Write ``summary.txt``, ``summary.html`` and ``results.json``.

    A writer that fails (unwritable directory, full disk) is logged and
    skipped so the remaining artifacts are still produced.

    Returns:
        Mapping of artifact kind (``"text"``, ``"html"``, ``"json"``) to
        the path actually written.
    """
    out_dir = Path(out_dir)
    renderers: dict[str, tuple[str, Callable[[], str]]] = {
        "text": (TEXT_FILENAME, lambda: build_text_summary(snapshot, thresholds)),
        "html": (HTML_FILENAME, lambda: build_html_report(snapshot, thresholds)),
        "json": (JSON_FILENAME, lambda: build_json_export(snapshot, thresholds, run)),
    }

    written: dict[str, Path] = {}
    for kind, (filename, render) in renderers.items():
        path = out_dir / filename
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(render(), encoding="utf-8")
        except OSError:
            logger.exception("Could not write %s report to %s", kind, path)
            continue
        written[kind] = path
        logger.info("Wrote %s report: %s", kind, path)
    return written
