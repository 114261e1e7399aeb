"""Per-request facade over the entitlement resolver for feature gating."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from ..entitlements.models import FeatureAccess, FeatureKey
from .enforcement import require_access

if TYPE_CHECKING:  # pragma: no cover
    from ..entitlements.service import EntitlementResolver
    from ..users.models import User


@dataclass(frozen=True)
class FeatureGate:
    """Facade exposing gating-centric helpers for one user."""

    resolver: "EntitlementResolver"
    user_id: str

    def check(self, feature: Union[FeatureKey, str]) -> FeatureAccess:
        return self.resolver.check(self.user_id, feature)

    def has(self, feature: Union[FeatureKey, str]) -> bool:
        """Return whether the feature is usable right now."""

        return self.check(feature).has_access

    def require(self, feature: Union[FeatureKey, str]) -> FeatureAccess:
        """Ensure the feature is usable without charging usage."""

        return require_access(self.check(feature))

    def consume(self, feature: Union[FeatureKey, str]) -> FeatureAccess:
        """Charge one use, raising when the limit is exhausted."""

        return require_access(self.resolver.consume(self.user_id, feature))

    def assert_capacity(self, feature: Union[FeatureKey, str], *, active_count: int) -> FeatureAccess:
        """Raise when another active resource would exceed the plan's capacity."""

        return require_access(self.resolver.check_capacity(self.user_id, feature, active_count))

    def require_elevated(self) -> "User":
        return self.resolver.require_elevated_access(self.user_id)
