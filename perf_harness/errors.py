"""Exception types raised by the load-test harness."""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for every error the harness raises on purpose."""


class SetupError(HarnessError):
    """
    The target failed its pre-run health check.

    Raised before any load is generated.  The runner catches it, logs it,
    and reports a setup failure instead of crashing the process.
    """


class ConfigError(HarnessError):
    """Stage list, threshold set, or profile file is invalid."""


class ThresholdSyntaxError(ConfigError):
    """A threshold expression could not be parsed."""


class MetricTypeError(HarnessError):
    """
    A metric name was reused with a different metric kind.

    This signals a programming defect rather than a load-test outcome, so
    it is allowed to propagate and end the run.
    """
