"""
Load-test configuration.

Defines environment-specific configuration classes for the harness.
Each class captures the target service location, per-request timing
limits, the stage profile, and the threshold set.  The ``get_config``
factory selects the right class from the ``PERF_ENV`` environment
variable (or an explicit key).

Stage and threshold definitions can be replaced wholesale from YAML
files (``STAGES_FILE`` / ``THRESHOLDS_FILE``) so that CI can tighten or
relax a gate without a code change.

Key Concepts Demonstrated:
- Class-based configuration with inheritance for DRY defaults
- Environment-variable overrides for 12-factor deployability
- A testing configuration with a seconds-long profile and short timeouts
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from perf_harness.errors import ConfigError

# The ramp used against the payment simulator: warm up, load, peak,
# stress, cool down.
DEFAULT_STAGES: list[dict[str, Any]] = [
    {"duration": "30s", "target": 10},
    {"duration": "1m", "target": 50},
    {"duration": "2m", "target": 100},
    {"duration": "1m", "target": 200},
    {"duration": "30s", "target": 0},
]

DEFAULT_THRESHOLDS: dict[str, list[Any]] = {
    "http_req_duration": ["p(95)<500"],
    "http_req_failed": ["rate<0.1"],
    "errors": ["rate<0.1"],
    "payment_intent_creation_time": ["p(95)<200"],
}


def load_yaml_file(path: str | Path) -> dict[str, Any]:
    """
    Read a YAML mapping from ``path``.

    Raises:
        ConfigError: If the file is missing, unparsable, or its
            top-level value is not a mapping.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def load_stages_file(path: str | Path) -> list[dict[str, Any]]:
    """Return the ``stages`` list from a profile YAML file."""
    data = load_yaml_file(path)
    stages = data.get("stages")
    if not isinstance(stages, list):
        raise ConfigError(f"{path} must define a 'stages' list")
    return stages


def load_thresholds_file(path: str | Path) -> dict[str, Any]:
    """
    Return the threshold mapping from a YAML file.

    Accepts either a top-level ``thresholds`` key or a bare mapping of
    metric name to expressions.
    """
    data = load_yaml_file(path)
    thresholds = data.get("thresholds", data)
    if not isinstance(thresholds, dict):
        raise ConfigError(f"{path} must define a 'thresholds' mapping")
    return thresholds


class EnvNumber:
    """
    Numeric class attribute read from an environment variable on access.

    Parsing happens when the attribute is read (``create_run`` /
    ``LoadTestRun.from_config``), not at import time, so a malformed
    value surfaces as a :class:`ConfigError` the CLI can report.

    Args:
        name: Environment variable to read.
        default: Value used when the variable is unset or empty;
            ``None`` makes the setting optional.
        convert: ``float`` or ``int``.
    """

    def __init__(self, name: str, default: str | None, convert: type = float):
        self.name = name
        self.default = default
        self.convert = convert

    def __get__(self, instance: Any, owner: type | None = None) -> Any:
        raw = os.environ.get(self.name) or self.default
        if raw is None:
            return None
        try:
            return self.convert(raw)
        except ValueError as exc:
            kind = "an integer" if self.convert is int else "a number"
            raise ConfigError(f"{self.name} must be {kind}, got {raw!r}") from exc


class Config:
    """
    Base (shared) configuration for a load-test run.

    String settings are read when the class body executes, i.e. at
    import time.  Numeric settings are :class:`EnvNumber` attributes,
    parsed each time they are read.  Pass overrides to
    :func:`perf_harness.create_run` to bypass the environment.
    """

    # Root URL of the payment simulator under test.
    BASE_URL: str = os.environ.get("BASE_URL", "http://localhost:8080")
    INTENT_PATH: str = os.environ.get("INTENT_PATH", "/v1/sim/intent")
    HEALTH_PATH: str = os.environ.get("HEALTH_PATH", "/healthz")

    # Pause between iterations of a single virtual user.
    THINK_TIME = EnvNumber("THINK_TIME", "0.1")
    # Calls longer than this are abandoned and recorded as failures.
    REQUEST_TIMEOUT = EnvNumber("REQUEST_TIMEOUT", "10")
    HEALTH_TIMEOUT = EnvNumber("HEALTH_TIMEOUT", "5")
    # Upper bound used by the "response time < Nms" check.
    LATENCY_CEILING_MS = EnvNumber("LATENCY_CEILING_MS", "500")
    # How often the scheduler re-sizes the virtual-user pool.
    TICK_INTERVAL = EnvNumber("TICK_INTERVAL", "1.0")

    STAGES: list[dict[str, Any]] = DEFAULT_STAGES
    THRESHOLDS: dict[str, list[Any]] = DEFAULT_THRESHOLDS

    OUTPUT_DIR: str = os.environ.get("OUTPUT_DIR", "test/performance")
    SEED = EnvNumber("PERF_SEED", None, convert=int)

    @classmethod
    def stages(cls) -> list[dict[str, Any]]:
        """Stage list, taken from ``STAGES_FILE`` when that is set."""
        stages_file = os.environ.get("STAGES_FILE")
        if stages_file:
            return load_stages_file(stages_file)
        return list(cls.STAGES)

    @classmethod
    def thresholds(cls) -> dict[str, Any]:
        """Threshold mapping, taken from ``THRESHOLDS_FILE`` when that is set."""
        thresholds_file = os.environ.get("THRESHOLDS_FILE")
        if thresholds_file:
            return load_thresholds_file(thresholds_file)
        return dict(cls.THRESHOLDS)


class DevelopmentConfig(Config):
    """Local runs against a simulator on localhost, with the full ramp."""


class TestingConfig(Config):
    """
    Test-suite overrides.

    A two-second profile, near-zero think-time, and short timeouts keep
    end-to-end runs fast.  The base URL points at a non-routable host so
    nothing reaches a real service unless a test overrides it.
    """

    BASE_URL: str = os.environ.get("TEST_BASE_URL", "http://payments.test")
    THINK_TIME: float = 0.01
    REQUEST_TIMEOUT: float = 1.0
    HEALTH_TIMEOUT: float = 1.0
    TICK_INTERVAL: float = 0.1
    STAGES: list[dict[str, Any]] = [
        {"duration": "1s", "target": 3},
        {"duration": "1s", "target": 0},
    ]
    OUTPUT_DIR: str = os.environ.get("TEST_OUTPUT_DIR", "test-results/performance")


class ProductionConfig(Config):
    """
    CI / pre-production gate.

    All values are expected to come from environment variables set by
    the pipeline; only the think-time default is raised to keep per-user
    request rates realistic.
    """

    THINK_TIME = EnvNumber("THINK_TIME", "0.5")


# Lookup table mapping environment name strings to their config classes.
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"``, or
            ``"production"``.  When *None*, the ``PERF_ENV``
            environment variable is consulted, falling back to
            ``"development"`` if unset.

    Returns:
        The ``Config`` subclass matching the requested environment,
        or ``DevelopmentConfig`` if the key is unrecognised.
    """
    if env is None:
        env = os.environ.get("PERF_ENV", "development")
    return config.get(env, config["default"])
