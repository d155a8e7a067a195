"""
Payment simulator load-test harness.

This package drives staged synthetic traffic against the payment
simulator's intent endpoint, aggregates latency and success metrics,
and decides pass/fail against k6-style thresholds.

Key Concepts Demonstrated:
- Factory function (create_run) mirroring the application-factory
  pattern: one call builds a fully-configured, independent run
- Environment-aware configuration loading via get_config
"""

from __future__ import annotations

import logging
from typing import Any

from perf_harness.config import get_config
from perf_harness.runner import LoadTestRun, RunOutcome, RunResult

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

__all__ = ["LoadTestRun", "RunOutcome", "RunResult", "create_run", "get_config"]


def create_run(config_name: str | None = None, **overrides: Any) -> LoadTestRun:
    """
    Construct a load-test run from the named configuration.

    Args:
        config_name: Optional environment key ("development", "testing",
            "production").  When *None*, the PERF_ENV environment
            variable is consulted, defaulting to "development".
        **overrides: Any :class:`LoadTestRun` keyword argument, taking
            precedence over the configuration class.

    Returns:
        A ready-to-run :class:`LoadTestRun`.
    """
    config_class = get_config(config_name)
    logger.info("Creating load-test run with config: %s", config_class.__name__)
    return LoadTestRun.from_config(config_class, **overrides)
