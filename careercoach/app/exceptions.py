"""Typed errors raised by the entitlement and subscription core."""
from __future__ import annotations

from typing import Optional


class EntitlementError(Exception):
    """Base class for every error raised by the entitlement core."""


class NotFoundError(EntitlementError, LookupError):
    """A user, subscription, or feature record does not exist."""


class UnknownFeatureError(EntitlementError, LookupError):
    """A feature name is not part of the plan catalog."""

    def __init__(self, feature_name: str) -> None:
        self.feature_name = feature_name
        super().__init__(f"Unknown feature: {feature_name}")


class ConflictError(EntitlementError):
    """The user already holds an active paid subscription."""


class InvalidStateError(EntitlementError):
    """A lifecycle transition is not permitted from the current status."""

    def __init__(self, message: str, *, current_status: Optional[str] = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class ConfigError(EntitlementError, ValueError):
    """The plan catalog or its overrides are invalid."""


class UserSyncError(EntitlementError):
    """The subscription was persisted but the linked user could not be updated."""

    def __init__(self, subscription_id: str, user_id: str) -> None:
        self.subscription_id = subscription_id
        self.user_id = user_id
        super().__init__(
            f"Subscription {subscription_id} persisted but user {user_id} was not synchronized"
        )


__all__ = [
    "ConfigError",
    "ConflictError",
    "EntitlementError",
    "InvalidStateError",
    "NotFoundError",
    "UnknownFeatureError",
    "UserSyncError",
]
