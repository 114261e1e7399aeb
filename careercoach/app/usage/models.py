"""Value objects exchanged with the usage ledger."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ..entitlements.models import UNLIMITED, FeatureKey, UsagePeriod
from ..subscriptions.models import Subscription
from ..users.models import User


@dataclass(frozen=True)
class UsageSubject:
    """Whose counters are consulted: the subscription when present, else the user."""

    user: User
    subscription: Optional[Subscription] = None

    @property
    def uses_free_tier(self) -> bool:
        return self.subscription is None

    @property
    def key(self) -> str:
        if self.subscription is not None:
            return f"subscription:{self.subscription.subscription_id}"
        return f"user:{self.user.user_id}"


class UsageDecision(BaseModel):
    """Outcome of a usage check for one subject and feature."""

    feature: FeatureKey
    allowed: bool
    limit: int
    used: int
    period: UsagePeriod
    reset_applied: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def remaining(self) -> int:
        if self.limit == UNLIMITED:
            return UNLIMITED
        return max(self.limit - self.used, 0)
