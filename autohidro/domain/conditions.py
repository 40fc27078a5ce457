from __future__ import annotations
import math
from typing import Mapping, Optional
from .errors import ConfigurationError, SensingError
from .models import ACTIONS, METRICS, OPERATORS, Condition


def validate_condition(condition: Condition, relay_count: int) -> None:
    if condition.operator not in OPERATORS:
        raise ConfigurationError(f"Condition {condition.id}: unknown operator {condition.operator!r}")
    if condition.action not in ACTIONS:
        raise ConfigurationError(f"Condition {condition.id}: unknown action {condition.action!r}")
    if condition.metric not in METRICS:
        raise ConfigurationError(f"Condition {condition.id}: unknown metric {condition.metric!r}")
    if condition.hold_seconds < 0:
        raise ConfigurationError(f"Condition {condition.id}: hold_seconds must be >= 0")
    if not math.isfinite(condition.threshold):
        raise ConfigurationError(f"Condition {condition.id}: threshold must be a finite number")
    if condition.actuator_id < 1 or condition.actuator_id > relay_count:
        raise ConfigurationError(
            f"Condition {condition.id} targets actuator {condition.actuator_id}, expected 1-{relay_count}"
        )


def compare(operator: str, value: float, threshold: float, tolerance: float = 0.5) -> bool:
    """Apply a condition operator. `==` matches inside an absolute tolerance band."""
    if operator == ">":
        return value > threshold
    if operator == "<":
        return value < threshold
    if operator == ">=":
        return value >= threshold
    if operator == "<=":
        return value <= threshold
    if operator == "==":
        return abs(value - threshold) < tolerance
    raise ConfigurationError(f"Unknown operator: {operator!r}")


def read_metric(sample: Mapping[str, float], metric: str) -> float:
    raw: Optional[float] = sample.get(metric)
    if raw is None:
        raise SensingError(f"Sample has no {metric!r} value")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise SensingError(f"Sample value for {metric!r} is not numeric: {raw!r}") from None
    if not math.isfinite(value):
        raise SensingError(f"Sample value for {metric!r} is not finite: {raw!r}")
    return value
