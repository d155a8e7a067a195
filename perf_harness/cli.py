"""
Command-line entry point: ``perf-harness``.

Runs one load test and exits with a code CI can act on.  Exit codes
follow a three-state convention so that CI can distinguish "thresholds
breached" from "harness could not run":

- ``0``: all thresholds passed
- ``1``: at least one threshold was breached (or the run aborted on one)
- ``2``: the harness itself failed (unhealthy target, bad config)

Usage examples::

    # Full default ramp against a local simulator:
    perf-harness --base-url http://localhost:8080

    # Custom profile and stricter gate, reports into ./out:
    perf-harness --profile profiles/smoke.yml --thresholds gate.yml --out-dir out
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path

from perf_harness import create_run
from perf_harness.config import load_stages_file, load_thresholds_file, load_yaml_file
from perf_harness.errors import ConfigError, HarnessError
from perf_harness.report import build_text_summary
from perf_harness.runner import RunOutcome

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for a load-test run."""
    parser = argparse.ArgumentParser(
        prog="perf-harness",
        description="Run a staged load test against the payment simulator API.",
    )
    parser.add_argument("--env", default=None, help="Config environment (development, testing, production)")
    parser.add_argument("--base-url", default=None, help="Root URL of the target service")
    parser.add_argument(
        "--profile",
        type=Path,
        default=None,
        help="YAML file with a 'stages' list and optional 'thresholds' mapping",
    )
    parser.add_argument("--thresholds", type=Path, default=None, help="YAML thresholds file")
    parser.add_argument("--out-dir", type=Path, default=None, help="Directory for report artifacts")
    parser.add_argument("--seed", type=int, default=None, help="Seed for reproducible payloads")
    parser.add_argument("--think-time", type=float, default=None, help="Seconds between iterations")
    parser.add_argument(
        "--wait-healthy",
        type=float,
        default=None,
        help="Poll /healthz for up to this many seconds before starting",
    )
    return parser.parse_args(argv)


def _profile_overrides(args: argparse.Namespace) -> dict:
    overrides: dict = {}
    if args.profile is not None:
        overrides["stages"] = load_stages_file(args.profile)
        profile = load_yaml_file(args.profile)
        if "thresholds" in profile:
            overrides["thresholds"] = load_thresholds_file(args.profile)
    if args.thresholds is not None:
        overrides["thresholds"] = load_thresholds_file(args.thresholds)
    return overrides


def main(argv: Sequence[str] | None = None) -> int:
    """
    Entry point: build the run, execute it, print the summary.

    Returns:
        ``EXIT_PASS`` (0) if all thresholds are met,
        ``EXIT_THRESHOLD_BREACH`` (1) if any are exceeded, or
        ``EXIT_SCRIPT_ERROR`` (2) when the run could not take place.
    """
    args = parse_args(argv)

    try:
        run = create_run(
            args.env,
            base_url=args.base_url,
            output_dir=args.out_dir,
            seed=args.seed,
            think_time=args.think_time,
            health_wait=args.wait_healthy,
            **_profile_overrides(args),
        )
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    try:
        result = run.run()
    except HarnessError as exc:
        # A crashed virtual user; its traceback was already logged.
        print(f"Load test failed: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    if result.outcome is RunOutcome.SETUP_FAILED:
        print(f"Load test not started: {result.error}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    print(build_text_summary(result.snapshot, result.thresholds))
    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


if __name__ == "__main__":
    raise SystemExit(main())
