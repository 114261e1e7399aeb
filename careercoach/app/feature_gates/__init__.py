"""Feature gating utilities coordinating entitlement enforcement."""
from .capacity import CapacityEvaluation, assert_capacity, evaluate_capacity
from .context import FeatureGate
from .enforcement import require_access, require_feature
from .exceptions import FeatureGateError

__all__ = [
    "CapacityEvaluation",
    "FeatureGate",
    "FeatureGateError",
    "assert_capacity",
    "evaluate_capacity",
    "require_access",
    "require_feature",
]
