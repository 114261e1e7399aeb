"""User records as seen by the entitlement core."""

from .memory import InMemoryUserDirectory
from .models import (
    FREE_TIER_COUNTERS,
    UsageCounter,
    User,
    UserRole,
    UserSubscriptionSnapshot,
    UserSubscriptionStatus,
    UserUsage,
)
from .repository import PostgresUserDirectory, UserDirectory

__all__ = [
    "FREE_TIER_COUNTERS",
    "InMemoryUserDirectory",
    "PostgresUserDirectory",
    "UsageCounter",
    "User",
    "UserDirectory",
    "UserRole",
    "UserSubscriptionSnapshot",
    "UserSubscriptionStatus",
    "UserUsage",
]
