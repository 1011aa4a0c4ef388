from __future__ import annotations

import math
from typing import Any, Callable, Mapping, Sequence

ThresholdCheck = Callable[[Any, Any], bool]

# Reference thresholds. Channel configuration may override any of them.
LIGHT_CHANGE_BY = 200.0
PRESSURE_CHANGE_BY_KPA = 1.0
TEMPERATURE_CHANGE_BY_C = 2.0
ACCELERATION_CHANGE_BY = 9.80665 / 2.0
ANGULAR_VELOCITY_CHANGE_BY = math.pi / 2.0


def scalar_delta(recorded: float, candidate: float) -> float:
    return abs(float(recorded) - float(candidate))


def vector_delta(
    recorded: Mapping[str, float],
    candidate: Mapping[str, float],
    components: Sequence[str],
) -> float:
    """Magnitude of the componentwise difference between two structured values."""

    total = 0.0
    for name in components:
        diff = float(recorded[name]) - float(candidate[name])
        total += diff * diff
    return math.sqrt(total)


def scalar_exceeds(threshold: float) -> ThresholdCheck:
    limit = float(threshold)

    def _check(recorded: Any, candidate: Any) -> bool:
        return scalar_delta(recorded, candidate) > limit

    return _check


def vector_exceeds(threshold: float, components: Sequence[str]) -> ThresholdCheck:
    limit = float(threshold)
    names = tuple(components)
    if not names:
        raise ValueError("vector threshold requires at least one component")

    def _check(recorded: Any, candidate: Any) -> bool:
        return vector_delta(recorded, candidate, names) > limit

    return _check


def should_record(*, recorded_timestamp: float, recorded: Any, candidate: Any, check: ThresholdCheck) -> bool:
    """First reading always records; afterwards only a threshold breach does."""

    if recorded_timestamp == 0:
        return True
    return check(recorded, candidate)
