"""Capacity evaluation for features gated on a live count of active resources."""
from __future__ import annotations

from dataclasses import dataclass

from ..entitlements.models import FEATURE_DISABLED_MESSAGE, UNLIMITED, FeatureKey
from ..usage.periods import is_within_limit
from .exceptions import FeatureGateError


@dataclass(frozen=True)
class CapacityEvaluation:
    """Represents the outcome of a capacity check."""

    feature: FeatureKey
    enabled: bool
    max_active: int
    active_count: int
    allowed: bool

    @property
    def remaining(self) -> int:
        if self.max_active == UNLIMITED:
            return UNLIMITED
        return max(self.max_active - self.active_count, 0)

    @property
    def message(self) -> str:
        if not self.enabled:
            return FEATURE_DISABLED_MESSAGE
        return (
            f"You can have maximum {self.max_active} active {self.feature.value}. "
            "Complete or pause existing ones."
        )

    def to_dict(self) -> dict[str, int | bool | str]:
        """Serialize the evaluation for logging or telemetry."""

        return {
            "feature": self.feature.value,
            "enabled": self.enabled,
            "max_active": self.max_active,
            "active_count": self.active_count,
            "allowed": self.allowed,
        }


def evaluate_capacity(
    *,
    feature: FeatureKey,
    max_active: int,
    active_count: int,
    enabled: bool = True,
) -> CapacityEvaluation:
    """Determine whether one more active resource fits under ``max_active``."""

    if active_count < 0:
        raise ValueError("active_count must be >= 0")

    return CapacityEvaluation(
        feature=feature,
        enabled=enabled,
        max_active=max_active,
        active_count=active_count,
        allowed=enabled and is_within_limit(max_active, active_count),
    )


def assert_capacity(
    *,
    feature: FeatureKey,
    max_active: int,
    active_count: int,
    enabled: bool = True,
    error_code: str = "capacity_exceeded",
) -> CapacityEvaluation:
    """Raise when creating another active resource would exceed capacity."""

    evaluation = evaluate_capacity(
        feature=feature,
        max_active=max_active,
        active_count=active_count,
        enabled=enabled,
    )

    if not evaluation.allowed:
        raise FeatureGateError(
            code=error_code if evaluation.enabled else "feature_not_enabled",
            message=evaluation.message,
            detail={
                "feature": feature.value,
                "max_active": max_active,
                "active_count": active_count,
            },
        )

    return evaluation
