"""
Stage profile for the load ramp.

A load profile is an ordered list of ``(duration, target)`` pairs.  At
any elapsed time the desired number of virtual users is found by linear
interpolation between the previous stage's target and the current
stage's target, anchored at zero before the first stage.

Key Concepts Demonstrated:
- Immutable stage values (frozen dataclasses, tuple storage)
- k6-style duration strings (``"30s"``, ``"1m"``, ``"2m30s"``)
- Piecewise-linear ramp with round-half-up to whole users
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from perf_harness.errors import ConfigError

logger = logging.getLogger(__name__)

# One or more "<number><unit>" groups, e.g. "1m30s" or "250ms".
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """
    Convert a duration value to seconds.

    Args:
        value: A number of seconds, or a string such as ``"30s"``,
            ``"1m"``, ``"2m30s"``, ``"1h"`` or ``"250ms"``.  Bare numeric
            strings are read as seconds.

    Returns:
        The duration in seconds as a float.

    Raises:
        ConfigError: If the value is negative or not understood.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            seconds = _parse_duration_string(text, value)
    else:
        raise ConfigError(f"Invalid duration: {value!r}")

    if seconds < 0 or math.isnan(seconds):
        raise ConfigError(f"Duration must be non-negative: {value!r}")
    return seconds


def _parse_duration_string(text: str, original: Any) -> float:
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(text):
        raise ConfigError(f"Invalid duration: {original!r}")
    return total


@dataclass(frozen=True)
class Stage:
    """One segment of the ramp: reach ``target`` users over ``duration`` seconds."""

    duration: float
    target: int

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ConfigError(f"Stage duration must be non-negative, got {self.duration}")
        if isinstance(self.target, bool) or not isinstance(self.target, int) or self.target < 0:
            raise ConfigError(f"Stage target must be a non-negative integer, got {self.target!r}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Stage":
        """Build a stage from a ``{"duration": ..., "target": ...}`` mapping."""
        try:
            raw_duration = data["duration"]
            raw_target = data["target"]
        except (KeyError, TypeError) as exc:
            raise ConfigError(f"Stage needs 'duration' and 'target': {data!r}") from exc

        if isinstance(raw_target, float) and raw_target.is_integer():
            raw_target = int(raw_target)
        return cls(duration=parse_duration(raw_duration), target=raw_target)


class StageSchedule:
    """
    Ordered, immutable stage sequence with concurrency interpolation.

    Zero-duration stages are dropped at construction time with a warning;
    they never act as an interpolation anchor for the stage after them.
    """

    def __init__(self, stages: Iterable[Stage | Mapping[str, Any]]):
        active: list[Stage] = []
        for index, raw in enumerate(stages):
            stage = raw if isinstance(raw, Stage) else Stage.from_mapping(raw)
            if stage.duration == 0:
                logger.warning(
                    "Skipping stage %d (target=%d): duration is zero", index + 1, stage.target
                )
                continue
            active.append(stage)

        self._stages: tuple[Stage, ...] = tuple(active)
        self._total_duration = sum(stage.duration for stage in self._stages)

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    @property
    def total_duration(self) -> float:
        """Sum of all (non-skipped) stage durations, in seconds."""
        return self._total_duration

    @property
    def max_target(self) -> int:
        return max((stage.target for stage in self._stages), default=0)

    def is_exhausted(self, elapsed: float) -> bool:
        """Return True once ``elapsed`` has reached the end of the last stage."""
        return elapsed >= self._total_duration

    def stage_index_at(self, elapsed: float) -> int | None:
        """
        Return the zero-based index of the stage running at ``elapsed``.

        Returns ``None`` once the schedule is exhausted.
        """
        if elapsed < 0:
            elapsed = 0.0
        stage_start = 0.0
        for index, stage in enumerate(self._stages):
            if elapsed < stage_start + stage.duration:
                return index
            stage_start += stage.duration
        return None

    def desired_concurrency(self, elapsed: float) -> int:
        """
        Compute how many virtual users should be active at ``elapsed``.

        Within a stage the value moves linearly from the previous stage's
        target (zero for the first stage) to this stage's target.  The
        result is rounded half-up to a whole number of users and is never
        negative.  After the final stage the last target is held; the
        scheduler is expected to start draining at that point.

        Args:
            elapsed: Seconds since the run started.

        Returns:
            The desired number of concurrently active users.
        """
        if not self._stages:
            return 0
        if elapsed < 0:
            elapsed = 0.0

        previous_target = 0
        stage_start = 0.0
        for stage in self._stages:
            stage_end = stage_start + stage.duration
            if elapsed < stage_end:
                progress = (elapsed - stage_start) / stage.duration
                value = previous_target + (stage.target - previous_target) * progress
                return max(0, int(math.floor(value + 0.5)))
            previous_target = stage.target
            stage_start = stage_end

        return self._stages[-1].target

    def describe(self) -> str:
        """Short human-readable description, e.g. ``"30s→10, 60s→50"``."""
        return ", ".join(f"{stage.duration:g}s→{stage.target}" for stage in self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __repr__(self) -> str:
        return f"StageSchedule([{self.describe()}])"
